from fastapi import HTTPException, status


class CommunityError(Exception):
    """Base error for the community subsystem.

    ``error_key`` is the localization key the UI renders, ``detail`` is the
    message returned over HTTP.
    """

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    error_key = "errorGeneric"
    detail = "Unexpected error."

    def __init__(self, detail: str = None):
        if detail is not None:
            self.detail = detail
        super().__init__(self.detail)

    def to_http(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.detail)


class ValidationError(CommunityError):
    status_code = status.HTTP_400_BAD_REQUEST
    error_key = "errorValidation"
    detail = "Invalid input."


class EmptyContent(ValidationError):
    error_key = "errorEmptyMessage"
    detail = "Message content cannot be empty."


class MissingName(ValidationError):
    error_key = "errorConversationName"
    detail = "Group conversations need a name."


class InvalidParticipantCount(ValidationError):
    error_key = "errorSelectParticipants"
    detail = "Wrong number of participants for this conversation."


class SelfFriendRequest(ValidationError):
    error_key = "errorSelfRequest"
    detail = "Cannot send friend request to yourself."


class NoConversationSelected(ValidationError):
    error_key = "errorNoConversation"
    detail = "No conversation selected."


class AuthorizationError(CommunityError):
    # Never say why: the detail stays generic.
    status_code = status.HTTP_403_FORBIDDEN
    error_key = "errorNotAllowed"
    detail = "Not allowed."


class NotFoundError(CommunityError):
    status_code = status.HTTP_404_NOT_FOUND
    error_key = "errorNotFound"
    detail = "Not found."


class ConflictError(CommunityError):
    status_code = status.HTTP_409_CONFLICT
    error_key = "errorConflict"
    detail = "Conflicting state."


class DuplicateRequest(ConflictError):
    error_key = "errorDuplicateRequest"
    detail = "Friend request already pending or already friends."


class TransientStoreError(CommunityError):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    error_key = "errorStore"
    detail = "Database error."


class PartialFailure(CommunityError):
    error_key = "errorCreateConversation"
    detail = "Conversation could not be fully created."
