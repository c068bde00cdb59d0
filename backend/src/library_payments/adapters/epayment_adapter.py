"""epayment.kz (Halyk ePay) payment gateway adapter."""
from decimal import Decimal
from typing import Any, Optional, Type, TypeVar

import httpx
import structlog
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from library_payments.adapters.epayment_auth import GatewayTokenManager
from library_payments.adapters.epayment_types import (
    CardPaymentResponse,
    GatewayErrorBody,
    OperationResponse,
    TransactionStatusResponse,
    WidgetParams,
)
from library_payments.config import Settings, settings
from library_payments.exceptions import ExternalServiceError
from library_payments.metrics import gateway_requests_total
from library_payments.utils.currency import format_gateway_amount

logger = structlog.get_logger(__name__)

ResponseT = TypeVar("ResponseT", bound=BaseModel)


class EPaymentClient:
    """Adapter for the epayment.kz REST API."""

    def __init__(
        self,
        http_client: httpx.AsyncClient,
        token_manager: GatewayTokenManager,
        base_url: str,
        terminal: str,
        back_link: str = "",
        failure_back_link: str = "",
        post_link: str = "",
        widget_url: str = "",
    ):
        """Initialize the gateway client with a shared HTTP client and token manager."""
        self._http = http_client
        self._tokens = token_manager
        self._base_url = base_url.rstrip("/")
        self._terminal = terminal
        self._widget = WidgetParams(
            terminal=terminal,
            back_link=back_link,
            failure_back_link=failure_back_link,
            post_link=post_link,
            widget_url=widget_url,
        )

    @classmethod
    def from_settings(
        cls,
        http_client: httpx.AsyncClient,
        token_manager: GatewayTokenManager,
        config: Settings = settings,
    ) -> "EPaymentClient":
        return cls(
            http_client=http_client,
            token_manager=token_manager,
            base_url=config.epayment_api_endpoint,
            terminal=config.epayment_terminal,
            back_link=config.epayment_back_link,
            failure_back_link=config.epayment_failure_back_link,
            post_link=config.epayment_post_link,
            widget_url=config.epayment_widget_endpoint,
        )

    def widget_params(self) -> WidgetParams:
        """Merchant parameters returned to the client when a payment is initiated."""
        return self._widget

    async def get_token(self) -> str:
        """
        Get an access token for the payment widget.

        Raises:
            GatewayAuthenticationError: If the token exchange fails
        """
        return await self._tokens.get_token()

    async def check_status(self, invoice_id: str) -> TransactionStatusResponse:
        """
        Check the status of a payment by its invoice ID.

        Args:
            invoice_id: Gateway-facing invoice identifier

        Returns:
            Transaction status as reported by the gateway

        Raises:
            ExternalServiceError: If the gateway call fails
        """
        status_response = await self._request(
            "check_status",
            "GET",
            f"/check-status/payment/transaction/{invoice_id}",
            response_model=TransactionStatusResponse,
        )

        logger.info(
            "gateway_status_checked",
            invoice_id=invoice_id,
            result_code=status_response.result_code,
            transaction_status=status_response.transaction.status,
        )
        return status_response

    async def refund(
        self,
        transaction_id: str,
        amount: Optional[Decimal] = None,
        external_id: str = "",
    ) -> OperationResponse:
        """
        Refund a completed transaction.

        Args:
            transaction_id: Gateway transaction ID
            amount: Amount in major units for a partial refund, None for a full refund
            external_id: Optional reconciliation ID

        Returns:
            Gateway operation response

        Raises:
            ExternalServiceError: If the gateway rejects the refund
        """
        params: dict[str, str] = {}
        if amount is not None:
            params["amount"] = format_gateway_amount(amount)
        if external_id:
            params["externalID"] = external_id

        result = await self._request(
            "refund",
            "POST",
            f"/operation/{transaction_id}/refund",
            params=params or None,
            response_model=OperationResponse,
        )

        logger.info(
            "gateway_refund_processed",
            transaction_id=transaction_id,
            partial=amount is not None,
        )
        return result

    async def cancel(self, transaction_id: str) -> OperationResponse:
        """
        Cancel (void) an authorized transaction.

        Raises:
            ExternalServiceError: If the gateway rejects the cancellation
        """
        result = await self._request(
            "cancel",
            "POST",
            f"/operation/{transaction_id}/cancel",
            response_model=OperationResponse,
        )

        logger.info("gateway_cancel_processed", transaction_id=transaction_id)
        return result

    async def charge_card(
        self,
        invoice_id: str,
        amount: int,
        currency: str,
        card_token: str,
        description: str,
    ) -> CardPaymentResponse:
        """
        Charge a saved card token.

        Args:
            invoice_id: Gateway-facing invoice identifier
            amount: Amount in the smallest currency unit
            currency: ISO 4217 currency code
            card_token: Gateway card ID
            description: Payment description shown to the member

        Returns:
            Card payment result

        Raises:
            ExternalServiceError: If the gateway call fails
        """
        body = {
            "amount": amount,
            "currency": currency,
            "terminalId": self._terminal,
            "invoiceId": invoice_id,
            "description": description,
            "paymentType": "cardId",
            "cardId": {"id": card_token},
        }

        result = await self._request(
            "charge_card",
            "POST",
            "/payments/cards/auth",
            json=body,
            response_model=CardPaymentResponse,
        )

        logger.info(
            "gateway_card_charged",
            invoice_id=invoice_id,
            transaction_id=result.transaction_id or result.id,
            status=result.status,
        )
        return result

    async def _request(
        self,
        operation: str,
        method: str,
        path: str,
        response_model: Type[ResponseT],
        params: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> ResponseT:
        token = await self._tokens.get_token()
        headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
        }

        try:
            response = await self._http.request(
                method,
                f"{self._base_url}{path}",
                params=params,
                json=json,
                headers=headers,
            )
        except httpx.TimeoutException as e:
            gateway_requests_total.labels(operation=operation, outcome="transport_error").inc()
            logger.error("gateway_timeout", operation=operation)
            raise ExternalServiceError(f"Gateway {operation} timed out") from e
        except httpx.HTTPError as e:
            gateway_requests_total.labels(operation=operation, outcome="transport_error").inc()
            logger.error("gateway_http_error", operation=operation, error=str(e))
            raise ExternalServiceError(f"Gateway {operation} request failed: {e}") from e

        if response.status_code == 401:
            # Token revoked or expired early on the gateway side
            self._tokens.invalidate()

        if response.status_code != 200:
            gateway_requests_total.labels(operation=operation, outcome="error").inc()
            error_body = self._parse_error(response)
            logger.error(
                "gateway_request_failed",
                operation=operation,
                status_code=response.status_code,
                provider_code=error_body.code,
                provider_message=error_body.describe(),
            )
            raise ExternalServiceError(
                f"Gateway {operation} failed with HTTP {response.status_code}: {error_body.describe()}",
                provider_code=str(error_body.code) if error_body.code is not None else None,
                http_status=response.status_code,
            )

        try:
            data = response.json() if response.content else {}
            result = response_model.model_validate(data)
        except (ValueError, PydanticValidationError) as e:
            gateway_requests_total.labels(operation=operation, outcome="malformed").inc()
            logger.error("gateway_response_malformed", operation=operation, error=str(e))
            raise ExternalServiceError(f"Gateway {operation} returned a malformed response") from e

        gateway_requests_total.labels(operation=operation, outcome="success").inc()
        return result

    @staticmethod
    def _parse_error(response: httpx.Response) -> GatewayErrorBody:
        try:
            data = response.json()
        except ValueError:
            return GatewayErrorBody(message=response.text[:200] or None)
        if not isinstance(data, dict):
            return GatewayErrorBody()
        try:
            return GatewayErrorBody.model_validate(data)
        except PydanticValidationError:
            return GatewayErrorBody()
