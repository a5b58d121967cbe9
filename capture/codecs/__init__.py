"""
Format Codecs
=============

Wire formats for outbound change messages:
- json: JSON text
- avro: Avro object container (schema inferred per message)
- arrow: Arrow IPC stream (one-row columnar table)
"""

from typing import Optional

from ..errors import ConfigurationError
from .arrow_codec import ArrowSerializer
from .avro_codec import AvroSerializer
from .base import Serializer
from .codec import FormatCodec, OutboundMessage
from .json_codec import JsonSerializer

SERIALIZERS = {
    JsonSerializer.name: JsonSerializer,
    AvroSerializer.name: AvroSerializer,
    ArrowSerializer.name: ArrowSerializer,
}

DEFAULT_FORMAT = JsonSerializer.name


def get_serializer(name: str) -> Serializer:
    """Look up a serializer by format name."""
    serializer_class = SERIALIZERS.get((name or "").lower())
    if serializer_class is None:
        raise ConfigurationError(
            f"Unsupported format: {name}", {"supported": ",".join(sorted(SERIALIZERS))}
        )
    return serializer_class()


def create_codec(
    payload_format: str = DEFAULT_FORMAT,
    key_format: Optional[str] = None,
    value_format: Optional[str] = None,
    header_format: Optional[str] = None,
    copy_headers: bool = True,
    header_offset: bool = False,
) -> FormatCodec:
    """
    Build a FormatCodec.

    Key and value fall back to payload_format; headers fall back to
    payload_format as well.
    """
    return FormatCodec(
        key_serializer=get_serializer(key_format or payload_format),
        value_serializer=get_serializer(value_format or payload_format),
        header_serializer=get_serializer(header_format or payload_format),
        copy_headers=copy_headers,
        header_offset=header_offset,
    )


__all__ = [
    "FormatCodec",
    "OutboundMessage",
    "Serializer",
    "JsonSerializer",
    "AvroSerializer",
    "ArrowSerializer",
    "create_codec",
    "get_serializer",
]
