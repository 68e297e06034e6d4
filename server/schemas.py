from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Annotated, Any, Optional

Domain = Annotated[str, Field(min_length=1, max_length=253)]
PackageName = Annotated[str, Field(min_length=1, max_length=256)]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _reject_duplicates(value: Optional[list[str]]) -> Optional[list[str]]:
    if value is None:
        return value
    seen = set()
    for entry in value:
        if entry in seen:
            raise ValueError(f"duplicate entry: {entry}")
        seen.add(entry)
    return value


class RegisterDeviceRequest(CamelModel):
    device_id: str = Field(..., min_length=3, max_length=128)
    name: Optional[str] = Field(None, max_length=200)
    model: Optional[str] = Field(None, max_length=200)
    os_version: Optional[str] = Field(None, max_length=50)
    app_version: Optional[str] = Field(None, max_length=50)


class DevicePolicyUpdate(CamelModel):
    blocked_domains: Optional[list[Domain]] = None
    allowed_apps: Optional[list[PackageName]] = None
    blocked_apps: Optional[list[PackageName]] = None
    screenshot_interval: Optional[int] = Field(None, ge=5000, le=3600000)
    kiosk_mode: Optional[bool] = None
    # null or "" disables the PIN; omitted leaves it unchanged
    unlock_pin: Optional[str] = Field(None, max_length=32)

    @field_validator('blocked_domains', 'allowed_apps', 'blocked_apps')
    @classmethod
    def no_duplicates(cls, v):
        return _reject_duplicates(v)


class GlobalPolicyUpdate(CamelModel):
    blocked_domains: Optional[list[Domain]] = None
    allowed_apps: Optional[list[PackageName]] = None
    blocked_apps: Optional[list[PackageName]] = None
    screenshot_interval: Optional[int] = Field(None, ge=10000, le=3600000)
    kiosk_mode: Optional[bool] = None

    @field_validator('blocked_domains', 'allowed_apps', 'blocked_apps')
    @classmethod
    def no_duplicates(cls, v):
        return _reject_duplicates(v)


class HeartbeatRequest(CamelModel):
    current_url: Optional[str] = Field(None, max_length=2048)


class DispatchRequest(CamelModel):
    """Raw command body; decoded into a typed command by commands.decode_command."""
    type: str = Field(..., min_length=1, max_length=32)
    payload: Optional[dict[str, Any]] = None


class AckRequest(CamelModel):
    command_ids: list[str] = Field(..., max_length=500)


class ActivityRequest(CamelModel):
    action: str = Field(..., min_length=1, max_length=64)
    details: Optional[Any] = None


class UnlockValidateRequest(CamelModel):
    pin: str = Field(..., min_length=1, max_length=32)


class DomainRequest(CamelModel):
    domain: Domain


class PackageRequest(CamelModel):
    package_name: PackageName


class OkResponse(BaseModel):
    ok: bool
