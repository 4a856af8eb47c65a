"""Parsing and formatting of engine cue lines.

whisper.cpp prints one line per segment on its result channel::

    [00:00:07.900 --> 00:00:10.900]   text of the segment

Hours may be one or two digits, the decimal separator may be a dot or a
comma, and the hour field may be omitted (``MM:SS.mmm``).
"""

import re
from dataclasses import dataclass, replace

from chunkscribe.errors import CueFormatError

_TIME = r"\d{1,2}:\d{2}:\d{2}[.,]\d{1,3}|\d{1,2}:\d{2}[.,]\d{1,3}"
_CUE_RE = re.compile(rf"^\s*\[\s*({_TIME})\s*-->\s*({_TIME})\s*\](.*)$")


@dataclass(frozen=True)
class Segment:
    """One timestamped span of transcribed text.

    Times are milliseconds on the timeline of the whole input once the
    session has applied the window offset.
    """

    time_start: int
    time_end: int
    text: str
    raw: str = ""

    def shifted(self, offset_ms: int) -> "Segment":
        """Return a copy moved ``offset_ms`` later on the timeline."""
        if not offset_ms:
            return self
        return replace(
            self,
            time_start=self.time_start + offset_ms,
            time_end=self.time_end + offset_ms,
        )

    def to_dict(self) -> dict:
        return {
            "time_start": self.time_start,
            "time_end": self.time_end,
            "text": self.text,
        }


def time_to_ms(value: str) -> int:
    """Convert ``H:MM:SS.mmm`` / ``MM:SS.mmm`` to integer milliseconds.

    Fractions longer than three digits are truncated (floor).

    Raises:
        CueFormatError: If the value is not a well-formed time.
    """
    text = str(value).strip().replace(",", ".")
    parts = text.split(":")
    if len(parts) == 3:
        hours, minutes, seconds = parts
    elif len(parts) == 2:
        hours, (minutes, seconds) = "0", parts
    else:
        raise CueFormatError(f"Bad time format: {value!r}")

    whole, _, fraction = seconds.partition(".")
    fields = (hours, minutes, whole, fraction or "0")
    if not all(f.isascii() and f.isdigit() for f in fields):
        raise CueFormatError(f"Bad time: {value!r}")

    millis = int((fraction + "000")[:3])
    total_seconds = (int(hours) * 60 + int(minutes)) * 60 + int(whole)
    return total_seconds * 1000 + millis


def parse_cue_line(line: str) -> Segment:
    """Parse one engine result line into a window-local Segment.

    Raises:
        CueFormatError: If the line does not match the cue grammar, a time
            is malformed, or the end time precedes the start time.
    """
    match = _CUE_RE.match(line)
    if match is None:
        raise CueFormatError(f"Line does not match cue pattern: {line!r}")

    start_ms = time_to_ms(match.group(1))
    end_ms = time_to_ms(match.group(2))
    if end_ms < start_ms:
        raise CueFormatError(f"End time is before start time: {line!r}")

    return Segment(time_start=start_ms, time_end=end_ms, text=match.group(3).strip(), raw=line)


def format_timestamp(ms: int) -> str:
    """Format milliseconds as ``HH:MM:SS.mmm``."""
    seconds, millis = divmod(max(int(ms), 0), 1000)
    minutes, secs = divmod(seconds, 60)
    hours, minutes = divmod(minutes, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{millis:03d}"


def format_cue_line(start_ms: int, end_ms: int, text: str) -> str:
    """Build a cue line in the engine's result format."""
    return f"[{format_timestamp(start_ms)} --> {format_timestamp(end_ms)}]  {text}"
