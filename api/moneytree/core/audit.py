"""Structured audit events for sync and webhook activity.

Events are emitted on the ``moneytree.audit`` logger with the event name as the
message and the metadata attached via ``extra`` so log shippers can index it.
"""

import logging
import uuid
from datetime import datetime
from typing import Any

audit_logger = logging.getLogger("moneytree.audit")


def _jsonable(value: Any) -> Any:
    if isinstance(value, (uuid.UUID, datetime)):
        return str(value)
    return value


def log(event: str, metadata: dict[str, Any] | None = None, level: int = logging.INFO) -> None:
    fields = {k: _jsonable(v) for k, v in (metadata or {}).items() if v is not None}
    audit_logger.log(level, "%s %s", event, fields, extra={"audit_event": event, "audit": fields})
