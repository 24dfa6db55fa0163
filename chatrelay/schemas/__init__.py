"""
chatrelay.schemas
~~~~~~~~~~~~~~~~~
Pydantic schemas and models for the API.
"""
from chatrelay.schemas.api_response import ApiResponse
from chatrelay.schemas.events import (
    ConnectionEventData,
    ErrorEventData,
    LogEventData,
    RoomEventData,
    StateEventData,
)
from chatrelay.schemas.relay import (
    ConnectionCreateRequest,
    ConnectionData,
    ConnectionProfileRequest,
    ConnectionUpdateRequest,
    JoinRoomRequest,
    LoginRequest,
    RegisterRequest,
    RoomData,
    UserData,
)

# Call model_rebuild to resolve forward references in generic Pydantic models.
ApiResponse.model_rebuild()
