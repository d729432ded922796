from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class DeviceInfo(CamelModel):
    device_type: Literal["desktop", "mobile", "tablet"] | None = None
    device_name: str | None = Field(default=None, max_length=255)
    screen: str | None = Field(default=None, max_length=32)
    timezone: str | None = Field(default=None, max_length=64)
    language: str | None = Field(default=None, max_length=35)
    platform: str | None = Field(default=None, max_length=64)


class SignInRequest(CamelModel):
    email: str | None = Field(default=None, max_length=320)
    password: str | None = Field(default=None, max_length=1024)
    remember_me: bool = False
    device_fingerprint: str | None = Field(default=None, max_length=255)
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    trust_this_device: bool = False
    redirect_url: str = Field(default="/users", max_length=2048)


class SignInUser(CamelModel):
    id: int
    email: str
    name: str | None = None
    email_verified: bool
    phone_verified: bool
    two_factor_enabled: bool
    last_login: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SessionIssuedResponse(CamelModel):
    user: SignInUser
    device_trusted: bool
    bypassed_2fa: bool = Field(default=False, alias="bypassed2FA")
    security_score: int
    redirect_url: str


class TwoFactorRequiredResponse(CamelModel):
    requires_two_factor: bool = True
    challenge_id: str
    two_factor_methods: list[str]
    primary_methods: list[str]
    additional_methods: list[str]
    primary_method: str
    has_additional_methods: bool
    is_new_device: bool
    device_trusted: bool
    suspicious_activity: bool
    risk_score: int
    risk_factors: list[str]
    has_passkeys: bool
    recommendations: list[str]
    redirect_url: str


class TwoFactorVerifyRequest(CamelModel):
    challenge_id: str = Field(min_length=1, max_length=64)
    method: str = Field(default="2fa", max_length=32)
    code: str | None = Field(default=None, max_length=64)
    trust_this_device: bool = False


class TwoFactorCodeRequest(CamelModel):
    challenge_id: str = Field(min_length=1, max_length=64)
    method: Literal["sms", "email", "recovery_email", "recovery_phone"]


class TwoFactorCodeResponse(CamelModel):
    ok: bool
    method: str
    destination: str
    expires_in: int


class SessionRead(CamelModel):
    id: int
    device_id: int
    ip_address: str | None
    location: str | None
    trusted: bool
    bypassed_2fa: bool = Field(alias="bypassed2FA")
    expires_at: datetime
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SessionStatusResponse(CamelModel):
    user: SignInUser
    session: SessionRead


class LogoutResponse(CamelModel):
    ok: bool
