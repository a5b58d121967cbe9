"""
Format Codec
============

Encodes a (possibly flattened) change record into an outbound message.
Key, value and headers each use their own serializer; in practice all
three default to JSON.
"""

import json
import logging
from typing import Any, Dict, Optional

from ..errors import EncodingError
from ..records import ChangeRecord, Headers
from .base import Serializer

logger = logging.getLogger(__name__)


class OutboundMessage:
    """
    Encoded message handed to the outbound channel.

    Attributes:
        key: Encoded key bytes
        value: Encoded value bytes (b"" for tombstones)
        headers: Encoded header block bytes
        attributes: Routing metadata (cdc_topic, content_type, cdc_offset)
    """

    def __init__(self, key: bytes, value: bytes, headers: bytes, attributes: Optional[Dict[str, Any]] = None):
        self.key = key
        self.value = value
        self.headers = headers
        self.attributes = attributes or {}

    @property
    def topic(self) -> Optional[str]:
        return self.attributes.get("cdc_topic")

    def __eq__(self, other) -> bool:
        if not isinstance(other, OutboundMessage):
            return NotImplemented
        return (
            self.key == other.key
            and self.value == other.value
            and self.headers == other.headers
            and self.attributes == other.attributes
        )

    def __repr__(self) -> str:
        return f"OutboundMessage(topic={self.topic!r}, key={self.key!r}, value={len(self.value)} bytes)"


class FormatCodec:
    """
    Serializes record key, value and headers.

    Args:
        key_serializer: Serializer for the key
        value_serializer: Serializer for the value
        header_serializer: Serializer for the header list
        copy_headers: Include record headers in the message
        header_offset: Add the source position as the "cdc_offset" attribute
    """

    def __init__(
        self,
        key_serializer: Serializer,
        value_serializer: Serializer,
        header_serializer: Serializer,
        copy_headers: bool = True,
        header_offset: bool = False,
    ):
        self.key_serializer = key_serializer
        self.value_serializer = value_serializer
        self.header_serializer = header_serializer
        self.copy_headers = copy_headers
        self.header_offset = header_offset

    def _fail(self, part: str, record: ChangeRecord, error: Exception) -> EncodingError:
        return EncodingError(
            f"Failed to encode record {part}: {error}",
            {"partition": record.partition, "position": record.position, "topic": record.topic},
        )

    def encode_key(self, record: ChangeRecord) -> bytes:
        try:
            return self.key_serializer.encode(record.key)
        except Exception as e:
            raise self._fail("key", record, e) from e

    def encode_value(self, record: ChangeRecord) -> bytes:
        try:
            return self.value_serializer.encode(record.value)
        except Exception as e:
            raise self._fail("value", record, e) from e

    def encode_headers(self, record: ChangeRecord) -> bytes:
        headers = record.headers if self.copy_headers else ()
        try:
            return self.header_serializer.encode_headers(headers)
        except Exception as e:
            raise self._fail("headers", record, e) from e

    def decode_key(self, data: bytes) -> Any:
        return self.key_serializer.decode(data)

    def decode_value(self, data: bytes) -> Any:
        return self.value_serializer.decode(data)

    def decode_headers(self, data: bytes) -> Headers:
        return self.header_serializer.decode_headers(data)

    def encode(self, record: ChangeRecord) -> OutboundMessage:
        """
        Encode a record into an outbound message.

        Raises:
            EncodingError: If key, value or headers cannot be serialized
        """
        value = self.encode_value(record)
        attributes = {
            "cdc_topic": record.topic,
            "content_type": "text/plain" if record.value is None else self.value_serializer.content_type,
        }
        if self.header_offset:
            try:
                attributes["cdc_offset"] = json.dumps(
                    {"partition": record.partition, "position": record.position}
                )
            except (TypeError, ValueError) as e:
                logger.warning(f"Failed to record cdc_offset attribute: {e}")
        return OutboundMessage(
            key=self.encode_key(record),
            value=value,
            headers=self.encode_headers(record),
            attributes=attributes,
        )

    def __repr__(self) -> str:
        return (
            f"FormatCodec(key={self.key_serializer.name}, value={self.value_serializer.name}, "
            f"header={self.header_serializer.name})"
        )
