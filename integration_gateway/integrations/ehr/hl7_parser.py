"""
Legacy HL7 v2 message parser.

Structural decoding only. hl7apy decodes the ER7 text as a flat list of
segments and each segment is exposed as its field strings. The MSH header
is required and supplies the routing identifiers. Field numbers follow HL7
convention (MSH-1 is the field separator itself, so MSH-3 is the first field
after the encoding characters).
No clinical interpretation is performed.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List

from hl7apy.consts import VALIDATION_LEVEL
from hl7apy.exceptions import HL7apyException
from hl7apy.parser import parse_message

from integration_gateway.core.logging import get_logger

from .exceptions import MalformedMessage

logger = get_logger(__name__)

FIELD_SEPARATOR = "|"
SEGMENT_TERMINATOR = "\r"
DEFAULT_COMPONENT_SEPARATOR = "^"
HEADER_SEGMENT = "MSH"


@dataclass
class Segment:
    """One segment: type tag plus its fields in order"""

    type: str
    fields: List[str] = field(default_factory=list)

    def field_value(self, number: int) -> str:
        """Field by HL7 number (1-based). Missing fields read as ''."""
        if self.type == HEADER_SEGMENT:
            # MSH-1 is the separator itself, so MSH-2 is fields[0]
            if number == 1:
                return FIELD_SEPARATOR
            index = number - 2
        else:
            index = number - 1
        if index < 0 or index >= len(self.fields):
            return ""
        return self.fields[index]

    def component(self, number: int, position: int, separator: str = DEFAULT_COMPONENT_SEPARATOR) -> str:
        """Component ``position`` (1-based) of field ``number``."""
        parts = self.field_value(number).split(separator)
        return parts[position - 1] if 0 < position <= len(parts) else ""

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "fields": list(self.fields)}


@dataclass
class ParsedMessage:
    """Structurally decoded HL7 v2 message"""

    message_type: str
    control_id: str
    sending_application: str
    receiving_application: str
    segments: List[Segment]
    message_code: str = ""
    trigger_event: str = ""
    sending_facility: str = ""
    receiving_facility: str = ""
    timestamp: str = ""
    version: str = ""

    @property
    def header(self) -> Segment:
        return self.segments_of(HEADER_SEGMENT)[0]

    def segments_of(self, segment_type: str) -> List[Segment]:
        return [s for s in self.segments if s.type == segment_type]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_type": self.message_type,
            "message_code": self.message_code,
            "trigger_event": self.trigger_event,
            "control_id": self.control_id,
            "sending_application": self.sending_application,
            "sending_facility": self.sending_facility,
            "receiving_application": self.receiving_application,
            "receiving_facility": self.receiving_facility,
            "timestamp": self.timestamp,
            "version": self.version,
            "segments": [s.to_dict() for s in self.segments],
        }


class LegacyMessageParser:
    """Parses pipe-delimited HL7 v2 messages with hl7apy."""

    def parse(self, raw_message: str) -> ParsedMessage:
        """
        Decode ``raw_message``.

        Raises:
            MalformedMessage: empty input, no MSH header, or a message hl7apy rejects
        """
        if not raw_message or not raw_message.strip():
            raise MalformedMessage("Empty HL7 message")

        # Tolerate LF and CRLF terminators from file drops and copy/paste
        normalized = raw_message.replace("\r\n", SEGMENT_TERMINATOR).replace("\n", SEGMENT_TERMINATOR)
        lines = [line for line in normalized.split(SEGMENT_TERMINATOR) if line.strip()]
        if not any(line.startswith(HEADER_SEGMENT) for line in lines):
            logger.warning("hl7_missing_header", segment_types=[line[:3] for line in lines][:10])
            raise MalformedMessage("Missing MSH segment")

        try:
            message = parse_message(
                SEGMENT_TERMINATOR.join(lines),
                validation_level=VALIDATION_LEVEL.TOLERANT,
                find_groups=False,
            )
            encoding_chars = message.encoding_chars
            segments = [_decode_segment(s, encoding_chars) for s in message.children]
        except (HL7apyException, ValueError, LookupError) as e:
            logger.warning("hl7_message_rejected", error=str(e))
            raise MalformedMessage(f"Invalid HL7 message: {e}") from e

        msh = segments[0]
        component_separator = encoding_chars.get("COMPONENT") or DEFAULT_COMPONENT_SEPARATOR

        parsed = ParsedMessage(
            message_type=msh.field_value(9),
            control_id=msh.field_value(10),
            sending_application=msh.field_value(3),
            receiving_application=msh.field_value(5),
            segments=segments,
            message_code=msh.component(9, 1, component_separator),
            trigger_event=msh.component(9, 2, component_separator),
            sending_facility=msh.field_value(4),
            receiving_facility=msh.field_value(6),
            timestamp=msh.field_value(7),
            version=msh.field_value(12),
        )

        logger.debug(
            "hl7_message_parsed",
            message_type=parsed.message_type,
            control_id=parsed.control_id,
            segment_count=len(segments),
        )
        return parsed


def _decode_segment(segment: Any, encoding_chars: Dict[str, str]) -> Segment:
    """Flatten an hl7apy segment into ER7 field strings indexed by HL7 number."""
    repetitions: Dict[int, List[str]] = {}
    for hl7_field in segment.children:
        number = int(hl7_field.name.rsplit("_", 1)[-1])
        repetitions.setdefault(number, []).append(hl7_field.to_er7())

    if segment.name == HEADER_SEGMENT:
        # MSH-1 and MSH-2 are the delimiters themselves
        repetitions.pop(1, None)
        repetitions[2] = [
            "".join(encoding_chars[k] for k in ("COMPONENT", "REPETITION", "ESCAPE", "SUBCOMPONENT"))
        ]
        first = 2
    else:
        first = 1

    last = max(repetitions, default=first - 1)
    fields = [encoding_chars["REPETITION"].join(repetitions.get(n, [])) for n in range(first, last + 1)]
    return Segment(type=segment.name, fields=fields)


__all__ = ["Segment", "ParsedMessage", "LegacyMessageParser"]
