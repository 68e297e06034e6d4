"""
Command kinds and their payload shapes.

A command is decoded into one variant of `Command` (discriminated on `type`)
at ingress. After that the core only routes it; the payload is persisted and
pushed as plain JSON.
"""
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel


class CommandType(str, Enum):
    LOCK_SCREEN = "LOCK_SCREEN"
    UNLOCK_SCREEN = "UNLOCK_SCREEN"
    OPEN_URL = "OPEN_URL"
    CLOSE_TAB = "CLOSE_TAB"
    LAUNCH_APP = "LAUNCH_APP"
    SET_BRIGHTNESS = "SET_BRIGHTNESS"
    VOLUME = "VOLUME"
    GET_PRINT = "GET_PRINT"
    REBOOT = "REBOOT"
    ALERT = "ALERT"
    POLICY_CHANGE = "POLICY_CHANGE"
    START_KIOSK = "START_KIOSK"
    STOP_KIOSK = "STOP_KIOSK"


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class EmptyPayload(_Payload):
    pass


class LockScreenPayload(_Payload):
    require_pin: bool = False


class OpenUrlPayload(_Payload):
    url: str = Field(..., min_length=1, max_length=2048)


class CloseTabPayload(_Payload):
    tab_id: str = "active"


class LaunchAppPayload(_Payload):
    package_name: str = Field(..., min_length=1, max_length=256)


class LevelPayload(_Payload):
    level: float = Field(0.8, ge=0.0, le=1.0)


class AlertPayload(_Payload):
    message: str = Field("", max_length=1000)


class PolicyChangePayload(_Payload):
    blocked_domains: Optional[list[str]] = None
    allowed_apps: Optional[list[str]] = None
    blocked_apps: Optional[list[str]] = None
    screenshot_interval: Optional[int] = None
    kiosk_mode: Optional[bool] = None


class _Command(BaseModel):
    model_config = ConfigDict(extra="ignore")

    def wire_payload(self) -> dict[str, Any]:
        """Payload as it travels to the device (camelCase, unset fields dropped)."""
        return self.payload.model_dump(by_alias=True, exclude_none=True)


class LockScreenCommand(_Command):
    type: Literal["LOCK_SCREEN"]
    payload: LockScreenPayload = Field(default_factory=LockScreenPayload)


class UnlockScreenCommand(_Command):
    type: Literal["UNLOCK_SCREEN"]
    payload: EmptyPayload = Field(default_factory=EmptyPayload)


class OpenUrlCommand(_Command):
    type: Literal["OPEN_URL"]
    payload: OpenUrlPayload


class CloseTabCommand(_Command):
    type: Literal["CLOSE_TAB"]
    payload: CloseTabPayload = Field(default_factory=CloseTabPayload)


class LaunchAppCommand(_Command):
    type: Literal["LAUNCH_APP"]
    payload: LaunchAppPayload


class SetBrightnessCommand(_Command):
    type: Literal["SET_BRIGHTNESS"]
    payload: LevelPayload = Field(default_factory=LevelPayload)


class VolumeCommand(_Command):
    type: Literal["VOLUME"]
    payload: LevelPayload = Field(default_factory=LevelPayload)


class GetPrintCommand(_Command):
    type: Literal["GET_PRINT"]
    payload: EmptyPayload = Field(default_factory=EmptyPayload)


class RebootCommand(_Command):
    type: Literal["REBOOT"]
    payload: EmptyPayload = Field(default_factory=EmptyPayload)


class AlertCommand(_Command):
    type: Literal["ALERT"]
    payload: AlertPayload = Field(default_factory=AlertPayload)


class PolicyChangeCommand(_Command):
    type: Literal["POLICY_CHANGE"]
    payload: PolicyChangePayload = Field(default_factory=PolicyChangePayload)


class StartKioskCommand(_Command):
    type: Literal["START_KIOSK"]
    payload: EmptyPayload = Field(default_factory=EmptyPayload)


class StopKioskCommand(_Command):
    type: Literal["STOP_KIOSK"]
    payload: EmptyPayload = Field(default_factory=EmptyPayload)


Command = Annotated[
    Union[
        LockScreenCommand,
        UnlockScreenCommand,
        OpenUrlCommand,
        CloseTabCommand,
        LaunchAppCommand,
        SetBrightnessCommand,
        VolumeCommand,
        GetPrintCommand,
        RebootCommand,
        AlertCommand,
        PolicyChangeCommand,
        StartKioskCommand,
        StopKioskCommand,
    ],
    Field(discriminator="type"),
]

command_adapter: TypeAdapter = TypeAdapter(Command)


def decode_command(raw: Any) -> Command:
    """
    Decode `{"type": ..., "payload": ...}` into a typed command.

    A missing or null payload is treated as empty. Raises pydantic.ValidationError.
    """
    if isinstance(raw, dict) and raw.get("payload") is None:
        raw = {k: v for k, v in raw.items() if k != "payload"}
    return command_adapter.validate_python(raw)


def policy_change(payload: dict[str, Any]) -> PolicyChangeCommand:
    return PolicyChangeCommand(
        type=CommandType.POLICY_CHANGE.value,
        payload=PolicyChangePayload.model_validate(payload),
    )
