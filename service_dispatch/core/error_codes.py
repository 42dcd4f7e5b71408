"""Stable error codes returned in the API error envelope."""


class ErrorCode:
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    BOOKING_NOT_FOUND = "BOOKING_NOT_FOUND"
    PROVIDER_NOT_FOUND = "PROVIDER_NOT_FOUND"
    INVALID_STATUS = "INVALID_STATUS"
    INVALID_SERVICE_TYPE = "INVALID_SERVICE_TYPE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    PROVIDER_MISMATCH = "PROVIDER_MISMATCH"
    PROVIDER_BUSY = "PROVIDER_BUSY"
    CONCURRENT_UPDATE = "CONCURRENT_UPDATE"
    DUPLICATE_PROVIDER = "DUPLICATE_PROVIDER"
    DUPLICATE_CUSTOMER = "DUPLICATE_CUSTOMER"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
