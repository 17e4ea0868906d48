from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from .constants import DEFAULT_PORT
from .errors import DecodeError

AttributeKind = Literal["null", "boolean", "number", "string", "list", "map"]


@dataclass(frozen=True)
class AttributeValue:
    """One entity attribute value, tagged with its JSON kind.

    Lists are held as tuples of values and maps as key-sorted tuples of
    ``(key, value)`` pairs, so equality and hashing are structural and
    independent of key order.
    """

    kind: AttributeKind
    value: Any = None

    @classmethod
    def from_json(cls, raw: Any) -> "AttributeValue":
        if raw is None:
            return cls("null")
        if isinstance(raw, bool):
            return cls("boolean", raw)
        if isinstance(raw, (int, float)):
            return cls("number", raw)
        if isinstance(raw, str):
            return cls("string", raw)
        if isinstance(raw, list):
            return cls("list", tuple(cls.from_json(item) for item in raw))
        if isinstance(raw, dict):
            items = []
            for key, item in raw.items():
                if not isinstance(key, str):
                    raise DecodeError(f"Attribute map key must be a string, got {key!r}.")
                items.append((key, cls.from_json(item)))
            return cls("map", tuple(sorted(items, key=lambda pair: pair[0])))
        raise DecodeError(f"Unsupported attribute value type: {type(raw).__name__}.")

    def to_python(self) -> Any:
        if self.kind == "list":
            return [item.to_python() for item in self.value]
        if self.kind == "map":
            return {key: item.to_python() for key, item in self.value}
        return self.value


def _require_str(payload: dict, key: str) -> str:
    value = payload.get(key)
    if not isinstance(value, str):
        raise DecodeError(f"State payload field {key!r} must be a string.")
    return value


@dataclass(frozen=True)
class HAState:
    entity_id: str
    state: str
    attributes: dict[str, AttributeValue] = field(default_factory=dict, hash=False)
    last_changed: str = ""
    last_updated: str = ""

    @classmethod
    def from_payload(cls, payload: Any) -> "HAState":
        if not isinstance(payload, dict):
            raise DecodeError("State payload must be a JSON object.")

        raw_attributes = payload.get("attributes", {})
        if not isinstance(raw_attributes, dict):
            raise DecodeError("State payload field 'attributes' must be an object.")

        return cls(
            entity_id=_require_str(payload, "entity_id"),
            state=_require_str(payload, "state"),
            attributes={
                key: AttributeValue.from_json(value) for key, value in raw_attributes.items()
            },
            last_changed=_require_str(payload, "last_changed"),
            last_updated=_require_str(payload, "last_updated"),
        )

    @classmethod
    def list_from_payload(cls, payload: Any) -> list["HAState"]:
        if not isinstance(payload, list):
            raise DecodeError("Expected a JSON array of states.")
        return [cls.from_payload(item) for item in payload]

    def to_payload(self) -> dict:
        return {
            "entity_id": self.entity_id,
            "state": self.state,
            "attributes": {key: value.to_python() for key, value in self.attributes.items()},
            "last_changed": self.last_changed,
            "last_updated": self.last_updated,
        }


@dataclass(frozen=True)
class APIStatus:
    message: str

    @classmethod
    def from_payload(cls, payload: Any) -> "APIStatus":
        if not isinstance(payload, dict) or not isinstance(payload.get("message"), str):
            raise DecodeError("API status payload must contain a 'message' string.")
        return cls(message=payload["message"])


@dataclass(frozen=True)
class DiscoveredInstance:
    # host and port identify an instance; several advertisements may share them.
    name: str = field(compare=False)
    host: str = ""
    port: int = DEFAULT_PORT

    @property
    def base_url(self) -> str:
        host = f"[{self.host}]" if ":" in self.host else self.host
        return f"http://{host}:{self.port}"

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "host": self.host,
            "port": self.port,
            "base_url": self.base_url,
        }
