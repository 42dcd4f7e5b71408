from pydantic import BaseModel


class AdminOverrideRequest(BaseModel):
    # Omit provider_id to keep the current provider; send null to clear it.
    status: str | None = None
    provider_id: int | None = None


class ReconcileResponse(BaseModel):
    corrected_provider_ids: list[int]
    assigned_booking_ids: list[int]
