"""Parser for chat export transcripts.

Turns the raw text of a chat export into an ordered list of messages, each
carrying a deterministic fingerprint so the same message is recognised when
an export is imported again (or a longer export of the same chat is).
"""

import hashlib
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

# Sender used for lines without an author (joins, encryption notices, ...)
SYSTEM_SENDER = "system"

# Header line of a new message. Supported shapes:
#   12/03/2024, 14:05 - Alice: text          (24-hour, day first)
#   3/12/24, 2:05 PM - Alice: text           (12-hour, month first)
#   [12/03/2024, 14:05:33] Alice: text       (bracketed, with seconds)
#   12/03/2024, 14:05 - Alice joined         (no sender)
# The separator can be a hyphen, an en-dash or an em-dash.
HEADER_PATTERN = re.compile(
    r"^\[?(?P<date>\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}),\s*"
    r"(?P<time>\d{1,2}:\d{2})(?::?\d{2})?\s*(?P<ampm>[AaPp][Mm])?\s*"
    r"(?:\]\s*[-\u2013\u2014]?|[-\u2013\u2014])\s*"
    r"(?:(?P<sender>[^:]+?):\s*)?(?P<text>.*)$"
)

_DATE_SPLIT = re.compile(r"[/.-]")


@dataclass
class ParsedMessage:
    """A single message parsed from a transcript."""

    sender: str
    sent_at: datetime
    body: str  # original formatting preserved
    fingerprint: str
    line_no: int | None = None  # 1-based line of the header

    @property
    def timestamp(self) -> str:
        """Canonical timestamp string used in the fingerprint."""
        return canonical_timestamp(self.sent_at)


def canonical_timestamp(value: datetime) -> str:
    """Format a datetime as a timezone-independent UTC string.

    Example: 2024-03-12T14:05:00.000Z
    """
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_header_timestamp(date: str, time: str, ampm: str | None = None) -> datetime:
    """Convert the date and time fields of a header line to a UTC datetime.

    The date may be day-first or month-first: if the first component is
    greater than 12 it can only be a day. Two-digit years map to 2000-2099.
    With ``ampm`` the time is read as 12-hour, otherwise as 24-hour.

    Raises:
        ValueError: If the fields do not form a valid date and time.
    """
    parts = _DATE_SPLIT.split(date)
    first, second, year = int(parts[0]), int(parts[1]), int(parts[2])
    if year < 100:
        year += 2000

    if first > 12:
        day, month = first, second
    else:
        month, day = first, second

    hour_str, minute_str = time.split(":")
    hour, minute = int(hour_str), int(minute_str)

    if ampm:
        if hour < 1 or hour > 12:
            raise ValueError(f"Invalid 12-hour time: {time} {ampm}")
        is_pm = ampm.lower() == "pm"
        if is_pm and hour != 12:
            hour += 12
        elif not is_pm and hour == 12:
            hour = 0

    return datetime(year, month, day, hour, minute, tzinfo=UTC)


def normalize_sender(sender: str | None) -> str:
    """Trim and collapse whitespace; missing senders become ``system``."""
    if sender is None or not sender.strip():
        return SYSTEM_SENDER
    return re.sub(r"\s+", " ", sender.strip())


def normalize_body(body: str) -> str:
    """Normalize message text for hashing.

    Line endings are unified, trailing whitespace is stripped from every
    line and the whole text is trimmed. Case and internal spacing are kept.
    """
    text = body.replace("\r\n", "\n").replace("\r", "\n").strip()
    return "\n".join(line.rstrip(" \t") for line in text.split("\n"))


def compute_fingerprint(timestamp: str, sender: str, body: str) -> str:
    """Compute the SHA-256 fingerprint of a message.

    The hash input is ``timestamp|sender|body`` after normalization.
    """
    normalized_ts = re.sub(r"\s+", " ", timestamp.strip())
    normalized_sender = re.sub(r"\s+", " ", sender.strip())
    payload = f"{normalized_ts}|{normalized_sender}|{normalize_body(body)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def parse_chat(content: str) -> list[ParsedMessage]:
    """Parse a chat export into messages.

    - Lines that do not start with a header continue the previous message.
    - Lines before the first header are ignored.
    - Text that never matches a header yields an empty list.
    """
    if content.startswith("\ufeff"):
        content = content[1:]

    messages: list[ParsedMessage] = []
    header: tuple[str, datetime, int] | None = None
    body_lines: list[str] = []

    def commit() -> None:
        if header is None:
            return
        sender, sent_at, line_no = header
        body = "\n".join(body_lines)
        messages.append(
            ParsedMessage(
                sender=sender,
                sent_at=sent_at,
                body=body,
                fingerprint=compute_fingerprint(canonical_timestamp(sent_at), sender, body),
                line_no=line_no,
            )
        )

    for index, raw_line in enumerate(content.split("\n")):
        line = raw_line[:-1] if raw_line.endswith("\r") else raw_line
        match = HEADER_PATTERN.match(line)

        sent_at: datetime | None = None
        if match:
            try:
                sent_at = parse_header_timestamp(
                    match.group("date"), match.group("time"), match.group("ampm")
                )
            except ValueError:
                # Out-of-range date or time: not a real header
                sent_at = None

        if match and sent_at is not None:
            commit()
            header = (normalize_sender(match.group("sender")), sent_at, index + 1)
            body_lines = [match.group("text") or ""]
        elif header is not None:
            body_lines.append(line)

    commit()
    return messages


def parse_chat_file(file_path: Path | str) -> list[ParsedMessage]:
    """Read and parse a chat export file."""
    return parse_chat(Path(file_path).read_text(encoding="utf-8"))
