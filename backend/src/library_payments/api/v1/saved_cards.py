"""Saved card endpoints."""
from uuid import UUID

from fastapi import APIRouter, Depends, status

from library_payments.api.deps import CurrentMember, get_current_user, get_saved_card_service
from library_payments.schemas.saved_card import (
    PayWithSavedCardRequest,
    PayWithSavedCardResponse,
    SavedCardCreate,
    SavedCardList,
    SavedCardResponse,
)
from library_payments.services.saved_card_service import SavedCardService

router = APIRouter(prefix="/saved-cards", tags=["saved-cards"])


@router.post("", response_model=SavedCardResponse, status_code=status.HTTP_201_CREATED)
async def save_card(
    card_data: SavedCardCreate,
    user: CurrentMember = Depends(get_current_user),
    service: SavedCardService = Depends(get_saved_card_service),
) -> SavedCardResponse:
    """
    Save a gateway card token.

    Saving the same token twice returns the existing card. The first card
    becomes the default.
    """
    card = await service.save_card(user.member_id, card_data)
    return SavedCardResponse.model_validate(card)


@router.get("", response_model=SavedCardList)
async def list_cards(
    user: CurrentMember = Depends(get_current_user),
    service: SavedCardService = Depends(get_saved_card_service),
) -> SavedCardList:
    cards = await service.list_cards(user.member_id)
    return SavedCardList(items=[SavedCardResponse.model_validate(c) for c in cards], total=len(cards))


@router.post("/{card_id}/default", response_model=SavedCardResponse)
async def set_default_card(
    card_id: UUID,
    user: CurrentMember = Depends(get_current_user),
    service: SavedCardService = Depends(get_saved_card_service),
) -> SavedCardResponse:
    card = await service.set_default_card(card_id, user.member_id)
    return SavedCardResponse.model_validate(card)


@router.delete("/{card_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_card(
    card_id: UUID,
    user: CurrentMember = Depends(get_current_user),
    service: SavedCardService = Depends(get_saved_card_service),
) -> None:
    await service.delete_card(card_id, user.member_id)


@router.post("/{card_id}/pay", response_model=PayWithSavedCardResponse)
async def pay_with_saved_card(
    card_id: UUID,
    request: PayWithSavedCardRequest,
    user: CurrentMember = Depends(get_current_user),
    service: SavedCardService = Depends(get_saved_card_service),
) -> PayWithSavedCardResponse:
    """Charge a saved card without opening the payment widget."""
    return await service.pay_with_saved_card(card_id, user.member_id, request)
