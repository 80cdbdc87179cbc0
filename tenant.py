import logging
from contextvars import ContextVar

_current_user_id: ContextVar[int | None] = ContextVar("current_user_id", default=None)


def set_current_user_id(user_id: int) -> None:
    _current_user_id.set(int(user_id))


def clear_current_user_id() -> None:
    _current_user_id.set(None)


def get_current_user_id(required: bool = True) -> int | None:
    uid = _current_user_id.get()
    if uid is None and required:
        raise RuntimeError("User not authenticated.")
    return uid


class UserContextFilter(logging.Filter):
    """Stamps every record with the id of the user the request runs for."""

    def filter(self, record: logging.LogRecord) -> bool:
        uid = get_current_user_id(required=False)
        record.uid = uid if uid is not None else "-"
        return True
