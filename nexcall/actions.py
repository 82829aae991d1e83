"""
Actions the agent can request alongside a spoken reply.

Each kind carries only the fields it needs. The model is asked to return one
of these as the "action" object of its JSON reply; anything that does not
validate falls back to NoAction.
"""

import logging
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError

logger = logging.getLogger(__name__)


class NoAction(BaseModel):
    type: Literal["none"] = "none"


class TransferAction(BaseModel):
    """Hand the caller over to a human at the fallback number."""
    type: Literal["transfer"] = "transfer"
    reason: str = "requested_by_agent"


class CallbackAction(BaseModel):
    """Caller asked to be called back later."""
    type: Literal["callback"] = "callback"
    phone: Optional[str] = None
    preferred_time: Optional[str] = None


class ScheduleAction(BaseModel):
    """Caller wants an appointment booked."""
    type: Literal["schedule"] = "schedule"
    date: Optional[str] = None
    time: Optional[str] = None
    topic: Optional[str] = None


AgentAction = Annotated[
    Union[NoAction, TransferAction, CallbackAction, ScheduleAction],
    Field(discriminator="type"),
]

_action_adapter: TypeAdapter = TypeAdapter(AgentAction)


def parse_action(data: Any) -> Union[NoAction, TransferAction, CallbackAction, ScheduleAction]:
    """Validate a raw action payload, degrading to NoAction when it is unusable."""
    if data is None:
        return NoAction()
    if isinstance(data, str):
        data = {"type": data}
    try:
        return _action_adapter.validate_python(data)
    except ValidationError as e:
        logger.warning(f"METRIC agent_action_invalid payload={data!r} errors={e.error_count()}")
        return NoAction()
