# ftp_access/protocol/listing.py
"""
Directory listing parser.

Three listing grammars are supported, tried in this priority order when the
style is not forced:

- MLSD: machine readable facts, ``type=file;size=12;modify=20240101120000; name``
- Unix: ``ls -l`` style, ``-rw-r--r--  1 owner group  12 Jan  1 12:00 name``
- DOS:  IIS/Windows style, ``01-01-24  12:00PM   12 name``

Each grammar keeps its line matcher and its extractor together. Detection
looks at the first non-empty line only and the winning grammar is used for
the whole listing. Lines a grammar cannot parse are skipped.
"""
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from ftp_access.errors import ListingParseError
from ftp_access.models import FileEntry, FileType


class ListingStyle(str, Enum):
    MLSD = "mlsd"
    UNIX = "unix"
    DOS = "dos"


_MONTHS = {
    name: index
    for index, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}


def _parse_size(value: str, strict: bool, line: str) -> int:
    try:
        return int(value.replace(",", ""))
    except ValueError:
        if strict:
            raise ListingParseError(f"Invalid size field {value!r} in listing line: {line!r}")
        return 0


# --- MLSD -------------------------------------------------------------------

_MLSD_TEST = re.compile(r"^\S*type=[^;]*;\S*\s", re.IGNORECASE)


def _mlsd_matches(line: str) -> bool:
    return bool(_MLSD_TEST.match(line))


def _mlsd_time(value: str) -> Optional[datetime]:
    try:
        stamp = datetime.strptime(value[:14], "%Y%m%d%H%M%S")
    except ValueError:
        return None
    return stamp.replace(tzinfo=timezone.utc)


def _mode_to_permissions(mode: str) -> Optional[str]:
    try:
        bits = int(mode, 8)
    except ValueError:
        return None
    chars = []
    for shift in (6, 3, 0):
        part = (bits >> shift) & 0o7
        chars.append("r" if part & 4 else "-")
        chars.append("w" if part & 2 else "-")
        chars.append("x" if part & 1 else "-")
    return "".join(chars)


def _mlsd_extract(line: str, strict: bool) -> Optional[FileEntry]:
    facts_text, _, name = line.partition(" ")
    if not name:
        return None
    facts = {}
    for fact in facts_text.rstrip(";").split(";"):
        key, sep, value = fact.partition("=")
        if sep:
            facts[key.lower()] = value

    kind = facts.get("type", "").lower()
    if kind in ("cdir", "pdir") or name in (".", ".."):
        return None
    if kind == "file":
        file_type = FileType.FILE
    elif kind == "dir":
        file_type = FileType.DIRECTORY
    elif kind in ("os.unix=slink", "os.unix=symlink") or kind.startswith("os.unix=slink"):
        file_type = FileType.SYMLINK
    else:
        file_type = FileType.UNKNOWN

    size_fact = facts.get("size", facts.get("sizd", "0"))
    return FileEntry(
        name=name,
        type=file_type,
        size=_parse_size(size_fact, strict, line),
        modified_at=_mlsd_time(facts.get("modify", "")),
        raw_modified=facts.get("modify", ""),
        permissions=_mode_to_permissions(facts["unix.mode"]) if "unix.mode" in facts else None,
        facts=facts,
    )


# --- Unix -------------------------------------------------------------------

_UNIX_TEST = re.compile(r"^[-dlbcpsD][-rwxsStTL]{9}")
_UNIX_LINE = re.compile(
    r"^(?P<type>[-dlbcpsD])(?P<perms>[-rwxsStTL]{9})[+@.]?\s+"
    r"(?P<links>\d+)\s+"
    r"(?P<owner>\S+)\s+"
    r"(?:(?P<group>\S+)\s+)?"
    r"(?P<size>\S+)\s+"
    r"(?P<month>[A-Za-z]{3})\s+(?P<day>\d{1,2})\s+"
    r"(?P<timeyear>\d{1,2}:\d{2}|\d{4})\s"
    r"(?P<name>.+)$"
)


def _unix_matches(line: str) -> bool:
    return bool(_UNIX_TEST.match(line))


def _unix_time(month: str, day: str, time_or_year: str, now: datetime) -> Optional[datetime]:
    month_index = _MONTHS.get(month.lower())
    if month_index is None:
        return None
    try:
        if ":" in time_or_year:
            hour, minute = (int(part) for part in time_or_year.split(":"))
            stamp = datetime(now.year, month_index, int(day), hour, minute)
            # No year means "within the last six months"
            if stamp > now + timedelta(days=1):
                stamp = stamp.replace(year=now.year - 1)
        else:
            stamp = datetime(int(time_or_year), month_index, int(day))
    except ValueError:
        return None
    return stamp


def _unix_extract(line: str, strict: bool) -> Optional[FileEntry]:
    match = _UNIX_LINE.match(line)
    if match is None:
        return None
    name = match.group("name")
    if name in (".", ".."):
        return None

    type_char = match.group("type")
    link_target = None
    if type_char == "d":
        file_type = FileType.DIRECTORY
    elif type_char == "l":
        file_type = FileType.SYMLINK
        if " -> " in name:
            name, link_target = name.split(" -> ", 1)
    elif type_char == "-":
        file_type = FileType.FILE
    else:
        file_type = FileType.UNKNOWN

    month, day, time_or_year = match.group("month", "day", "timeyear")
    return FileEntry(
        name=name,
        type=file_type,
        size=_parse_size(match.group("size"), strict, line),
        modified_at=_unix_time(month, day, time_or_year, datetime.now()),
        raw_modified=f"{month} {day} {time_or_year}",
        permissions=match.group("perms"),
        link_target=link_target,
    )


# --- DOS --------------------------------------------------------------------

_DOS_TEST = re.compile(r"^\d{2}[-/]\d{2}[-/]\d{2,4}\s")
_DOS_LINE = re.compile(
    r"^(?P<date>\d{2}[-/]\d{2}[-/]\d{2,4})\s+"
    r"(?P<time>\d{1,2}:\d{2}\s*(?:[AaPp][Mm])?)\s+"
    r"(?P<size><DIR>|\S+)\s+"
    r"(?P<name>.+)$"
)


def _dos_matches(line: str) -> bool:
    return bool(_DOS_TEST.match(line))


def _dos_time(date: str, time: str) -> Optional[datetime]:
    text = f"{date.replace('/', '-')} {time.replace(' ', '').upper()}"
    for pattern in ("%m-%d-%y %I:%M%p", "%m-%d-%Y %I:%M%p", "%m-%d-%y %H:%M", "%m-%d-%Y %H:%M"):
        try:
            return datetime.strptime(text, pattern)
        except ValueError:
            continue
    return None


def _dos_extract(line: str, strict: bool) -> Optional[FileEntry]:
    match = _DOS_LINE.match(line)
    if match is None:
        return None
    name = match.group("name")
    if name in (".", ".."):
        return None
    date, time, size = match.group("date", "time", "size")
    if size.upper() == "<DIR>":
        file_type, byte_size = FileType.DIRECTORY, 0
    else:
        file_type, byte_size = FileType.FILE, _parse_size(size, strict, line)
    return FileEntry(
        name=name,
        type=file_type,
        size=byte_size,
        modified_at=_dos_time(date, time),
        raw_modified=f"{date} {time}",
    )


# --- dispatch ---------------------------------------------------------------

@dataclass(frozen=True)
class ListingGrammar:
    style: ListingStyle
    matches: Callable[[str], bool]
    extract: Callable[[str, bool], Optional[FileEntry]]


GRAMMARS: Dict[ListingStyle, ListingGrammar] = {
    ListingStyle.MLSD: ListingGrammar(ListingStyle.MLSD, _mlsd_matches, _mlsd_extract),
    ListingStyle.UNIX: ListingGrammar(ListingStyle.UNIX, _unix_matches, _unix_extract),
    ListingStyle.DOS: ListingGrammar(ListingStyle.DOS, _dos_matches, _dos_extract),
}

_TOTAL_LINE = re.compile(r"^total\s+\d+", re.IGNORECASE)


def _listing_lines(text: str) -> List[str]:
    lines = [line.rstrip("\r") for line in text.split("\n")]
    return [line for line in lines if line.strip() and not _TOTAL_LINE.match(line)]


def detect_style(text: str) -> Optional[ListingStyle]:
    """Return the first grammar matching the first listing line, or None."""
    lines = _listing_lines(text)
    if not lines:
        return None
    for grammar in GRAMMARS.values():
        if grammar.matches(lines[0]):
            return grammar.style
    return None


def parse_listing(
    text: str,
    style: Optional[ListingStyle] = None,
    strict: bool = False,
) -> List[FileEntry]:
    """
    Parse a complete listing body into FileEntry records.

    Args:
        text: Listing text as received over the data channel
        style: Force a grammar instead of detecting one
        strict: Raise ListingParseError instead of skipping bad lines
            and defaulting bad size fields to zero

    Returns:
        Parsed entries; an empty or unrecognised listing gives []
    """
    lines = _listing_lines(text)
    if not lines:
        return []
    if style is None:
        style = detect_style(text)
        if style is None:
            if strict:
                raise ListingParseError(f"Unrecognised listing format: {lines[0]!r}")
            return []

    grammar = GRAMMARS[ListingStyle(style)]
    entries = []
    for line in lines:
        entry = grammar.extract(line, strict)
        if entry is None:
            if strict and not _is_dot_entry(line, grammar):
                raise ListingParseError(f"Unparseable {grammar.style.value} listing line: {line!r}")
            continue
        entries.append(entry)
    return entries


def _is_dot_entry(line: str, grammar: ListingGrammar) -> bool:
    if grammar.style is ListingStyle.MLSD:
        facts = line.partition(" ")[0].lower()
        return "type=cdir" in facts or "type=pdir" in facts or line.endswith((" .", " .."))
    return line.endswith((" .", " .."))
