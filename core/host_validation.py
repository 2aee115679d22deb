"""
Request schema for host registration and unregistration.

A request names a machine by an opaque owner id, its hostname and its IPv4
address. Hostnames end in a three-digit ordinal; stripping it yields the
host group that selects the playbook and names the inventory section.

    web-shop-001  ->  group "web-shop"

Field formats are enforced by the HostRequest model. Which fields are
required differs between register and unregister, so presence is checked
by validate_host_request / validate_unregister_request.
"""

import re
from typing import Any

import pydantic
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator

from core.errors import ValidationError

ID_RE = re.compile(r"^[a-zA-Z0-9]+(?:-[a-zA-Z0-9]+)*$")
HOSTNAME_RE = re.compile(r"^[a-zA-Z0-9]+(?:-[a-zA-Z0-9]+)*-\d{3}$")

_OCTET = r"(?:25[0-5]|2[0-4]\d|[0-1]\d{2}|[1-9]?\d)"
ADDRESS_RE = re.compile(rf"^{_OCTET}\.{_OCTET}\.{_OCTET}\.{_OCTET}$")

# Accepted JSON keys per field, current spelling first
_FIELD_KEYS = {
    "id": ("id", "ID"),
    "hostname": ("hostname", "Hostname"),
    "address": ("address", "IP", "ip"),
}
_KEY_TO_FIELD = {key: name for name, keys in _FIELD_KEYS.items() for key in keys}


class HostRequest(BaseModel):
    """A register/unregister request body."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, populate_by_name=True)

    id: str = Field("", validation_alias=AliasChoices(*_FIELD_KEYS["id"]), description="Owner id")
    hostname: str = Field(
        "", validation_alias=AliasChoices(*_FIELD_KEYS["hostname"]), description="Target hostname",
    )
    address: str = Field(
        "", validation_alias=AliasChoices(*_FIELD_KEYS["address"]), description="IPv4 address",
    )

    @model_validator(mode="before")
    @classmethod
    def drop_blank_keys(cls, data: Any) -> Any:
        """Null or blank values count as absent, so a legacy key can still supply the field."""
        if not isinstance(data, dict):
            return data
        return {
            k: v for k, v in data.items()
            if v is not None and not (isinstance(v, str) and not v.strip())
        }

    @field_validator("id")
    @classmethod
    def validate_id(cls, v: str) -> str:
        """Hyphen-joined alphanumeric segments."""
        if v and not ID_RE.fullmatch(v):
            raise ValueError(f"invalid id: {v}")
        return v

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v: str) -> str:
        """Same shape as id, ending in a -NNN ordinal."""
        if v and not HOSTNAME_RE.fullmatch(v):
            raise ValueError(f"invalid hostname: {v}")
        return v

    @field_validator("address")
    @classmethod
    def validate_address(cls, v: str) -> str:
        """Strict dotted quad, each octet 0-255."""
        if v and not ADDRESS_RE.fullmatch(v):
            raise ValueError(f"invalid address: {v}")
        return v

    @property
    def owner_token(self) -> str:
        """Value stored in the host lock: id and address joined by '__'."""
        return f"{self.id}__{self.address}"

    @property
    def group(self) -> str:
        return host_group(self.hostname)

    @property
    def has_owner(self) -> bool:
        return bool(self.id or self.address)


def _rule_message(exc: pydantic.ValidationError) -> str:
    """Turn the first schema error into the message of the rule it broke."""
    error = exc.errors()[0]
    if error["type"] == "model_type":
        return "invalid json"
    if error["type"] == "value_error":
        return str(error["ctx"]["error"])
    key = str(error["loc"][0]) if error["loc"] else ""
    return f"invalid {_KEY_TO_FIELD.get(key, key)}: must be a string"


def parse_host_request(data: Any) -> HostRequest:
    """
    Build a request from a decoded JSON body.

    Raises:
        ValidationError: body is not an object, or a field is not a
            string or is malformed
    """
    try:
        return HostRequest.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(_rule_message(e)) from e


def host_group(hostname: str) -> str:
    """Strip the trailing -NNN ordinal from a hostname."""
    group, _, _ = hostname.rpartition("-")
    return group


def validate_host_request(req: HostRequest) -> None:
    """
    Check a registration request. All three fields are required.

    Raises:
        ValidationError: a field is missing
    """
    if not req.id or not req.hostname or not req.address:
        raise ValidationError("missing id/hostname/address")


def validate_unregister_request(req: HostRequest) -> None:
    """
    Check an unregistration request.

    The hostname is required. id and address guard the release and must be
    given together; leaving both out forces the release.
    """
    if not req.hostname:
        raise ValidationError("missing hostname")
    if req.has_owner and (not req.id or not req.address):
        raise ValidationError("id and address must be supplied together")
