from datetime import timedelta
from types import SimpleNamespace
from typing import Any, Dict, Optional
from marshmallow import INCLUDE, Schema, ValidationError, fields, post_dump, post_load
from ketch.utils.helpers import iso_datestr_to_datetime, to_rfc3339

JSON = Dict[str, Any]
MAX_REPR_LEN = 50

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "ms": 1e-3,
    "s": 1,
    "m": 60,
    "h": 3600,
}


class BaseModel(SimpleNamespace):
    """BaseModel that all models should inherit from.
    Args:
        **kwargs: All passed parameters as converted to instance attributes.
    """

    def __init__(self, **kwargs: Any) -> None:
        self.__dict__.update(kwargs)

    def __repr__(self) -> str:
        """Return a default repr of any Model.
        Returns:
            The string model parameters up to a `MAX_REPR_LEN`.
        """
        repr_ = super().__repr__()
        if len(repr_) > MAX_REPR_LEN:
            return repr_[:MAX_REPR_LEN] + " ...)"
        else:
            return repr_

    def as_dict(self) -> Dict[str, Any]:
        result = {}
        for key, value in self.__dict__.items():
            if isinstance(value, BaseModel):
                result[key] = value.as_dict()
            elif isinstance(value, list):
                result[key] = [
                    item.as_dict() if isinstance(item, BaseModel) else item
                    for item in value
                ]
            else:
                result[key] = value
        return result


class UnknownModel(BaseModel):
    """A convenience class that inherits from `BaseModel`."""

    def keys(self):
        return self.__dict__.keys()

    def values(self):
        return self.__dict__.values()

    def items(self):
        return self.__dict__.items()


class BaseSchema(Schema):
    """The default schema for all models.

    Unknown keys are kept on the loaded model and written back on dump, so
    fields the operator does not manage survive a load/modify/dump cycle.
    """

    __model__: Any = UnknownModel
    """Determine the object that is created when the load method is called."""

    class Meta:
        unknown = INCLUDE
        ordered = True

    @post_load
    def make_object(self, data: JSON, **kwargs: Any) -> "__model__":
        """Build model for the given `__model__` class attribute.
        Args:
            data: The JSON diction to use to build the model.
            **kwargs: Unused but required to match signature of `Schema.make_object`
        Returns:
            An instance of the `__model__` class.
        """
        return self.__model__(**data)

    @post_dump(pass_original=True)
    def restore_unknown(self, data: JSON, original: Any, **kwargs: Any) -> JSON:
        """Drop empty values and re-attach keys the schema does not declare."""
        data = {k: v for k, v in data.items() if v is not None}
        source = original.__dict__ if isinstance(original, BaseModel) else original
        if isinstance(source, dict):
            for key, value in source.items():
                if key not in self.fields and key not in data and value is not None:
                    data[key] = value
        return data


class Duration(fields.Field):
    """Time interval stored as integer nanoseconds.

    Also accepts duration strings such as ``30s``, ``5m`` or ``1h30m``.
    Loads as a `timedelta` and dumps back to nanoseconds.
    """

    def _serialize(self, value: Optional[timedelta], attr, obj, **kwargs):
        if value is None:
            return None
        return int(round(value.total_seconds() * 1e9))

    def _deserialize(self, value, attr, data, **kwargs) -> timedelta:
        if isinstance(value, bool):
            raise ValidationError("Invalid duration.")
        if isinstance(value, (int, float)):
            return timedelta(seconds=value / 1e9)
        if isinstance(value, str):
            return timedelta(seconds=parse_duration(value))
        raise ValidationError("Invalid duration.")


class KubeTime(fields.Field):
    """Timestamp in the RFC 3339 format used by kubernetes."""

    def _serialize(self, value, attr, obj, **kwargs):
        return to_rfc3339(value)

    def _deserialize(self, value, attr, data, **kwargs):
        try:
            return iso_datestr_to_datetime(value)
        except (ValueError, TypeError) as ex:
            raise ValidationError(f"Invalid timestamp: {value}") from ex


def parse_duration(text: str) -> float:
    """Parse a duration string like ``1h30m`` into seconds."""
    text = text.strip()
    if not text:
        raise ValidationError("Invalid duration.")
    if text.lstrip("-").replace(".", "", 1).isdigit():
        return float(text) / 1e9
    total, number, i = 0.0, "", 0
    while i < len(text):
        ch = text[i]
        if ch.isdigit() or ch == ".":
            number += ch
            i += 1
            continue
        unit = text[i : i + 2] if text[i : i + 2] in _DURATION_UNITS else ch
        if unit not in _DURATION_UNITS or not number:
            raise ValidationError(f"Invalid duration: {text}")
        total += float(number) * _DURATION_UNITS[unit]
        number = ""
        i += len(unit)
    if number:
        raise ValidationError(f"Invalid duration: {text}")
    return total
