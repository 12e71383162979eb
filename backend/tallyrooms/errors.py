"""Error taxonomy shared by the HTTP routes and the realtime bridge.

Every error carries a message that is safe to show to the client and the HTTP
status the REST surface answers with. On the socket, everything except
``Unauthorized`` is reported to the requesting connection only.
"""


class TallyRoomsError(Exception):
    status_code = 500
    default_message = "operation failed"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(TallyRoomsError):
    status_code = 404
    default_message = "not found"


class RoomNotFound(NotFound):
    default_message = "Room not found"


class ValidationError(TallyRoomsError):
    status_code = 422
    default_message = "invalid input"


class ResourceExhausted(TallyRoomsError):
    status_code = 503
    default_message = "Failed to generate unique room code"


class Unauthorized(TallyRoomsError):
    status_code = 401
    default_message = "Not authenticated"


class OperationFailed(TallyRoomsError):
    status_code = 500


class InvalidState(TallyRoomsError):
    status_code = 409
    default_message = "Join a room first"
