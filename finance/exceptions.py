from __future__ import annotations

from rest_framework import status
from rest_framework.exceptions import APIException


class StateConflict(APIException):
    """The document is not in a state that allows the requested change."""

    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Document is already in a terminal state.'
    default_code = 'state_conflict'


class RetryLater(APIException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = 'The request could not be completed right now, please retry.'
    default_code = 'retry_later'
