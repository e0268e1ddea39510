#!/usr/bin/env python3
"""Merge two BibTeX bibliographies, dropping duplicates and keeping keys unique."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass, field, replace
import sys
import threading
from types import MappingProxyType
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

FieldValue = Union[str, Tuple[str, ...]]


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING = _Missing()

KEY_FIELD = "key"
BIBTYPE_FIELD = "bibtype"
ALL_FIELDS = "all"
RESERVED_FIELDS = {KEY_FIELD, BIBTYPE_FIELD}

ONLY_DUPLICATES_MESSAGE = "Only duplicates in second collection"
DUPLICATES_FOUND_MESSAGE = "Duplicate entries found in second collection at position(s): "

FIELD_ORDER = [
    "author",
    "editor",
    "title",
    "journal",
    "journaltitle",
    "booktitle",
    "year",
    "date",
    "month",
    "volume",
    "number",
    "pages",
    "publisher",
    "edition",
    "series",
    "school",
    "institution",
    "organization",
    "doi",
    "eprint",
    "eprinttype",
    "url",
    "urldate",
    "note",
    "keywords",
    "isbn",
]
LIST_JOINER = " and "


class MergeOptionsError(ValueError):
    pass


def _freeze_value(value: Union[str, Sequence[str]]) -> FieldValue:
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return tuple(value)
    raise TypeError(f"Field values must be strings or lists of strings, got {type(value).__name__}")


@dataclass(frozen=True)
class Entry:
    """One bibliographic record.

    ``fields`` is frozen into a read-only, insertion-ordered mapping on
    construction; list values become tuples. Entries compare equal when
    bibtype, key and the field mapping all match.
    """

    bibtype: str
    key: str
    fields: Mapping[str, FieldValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        frozen = {name: _freeze_value(value) for name, value in dict(self.fields).items()}
        object.__setattr__(self, "fields", MappingProxyType(frozen))

    def __hash__(self) -> int:
        return hash(entry_fingerprint(self))

    def has_field(self, name: str) -> bool:
        if name in RESERVED_FIELDS:
            return True
        return name in self.fields

    def get(self, name: str, default: object = MISSING) -> object:
        if name == KEY_FIELD:
            return self.key
        if name == BIBTYPE_FIELD:
            return self.bibtype
        return self.fields.get(name, default)


@dataclass(frozen=True)
class Bibliography:
    entries: Tuple[Entry, ...] = ()
    attributes: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        entries = tuple(self.entries)
        for entry in entries:
            if not isinstance(entry, Entry):
                raise TypeError(f"Bibliography entries must be Entry objects, got {entry!r}")
        attributes = {name: tuple(values) for name, values in dict(self.attributes).items()}
        object.__setattr__(self, "entries", entries)
        object.__setattr__(self, "attributes", MappingProxyType(attributes))

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[Entry]:
        return iter(self.entries)

    def __getitem__(self, index: int) -> Entry:
        return self.entries[index]

    def __add__(self, other: Bibliography) -> Bibliography:
        if not isinstance(other, Bibliography):
            return NotImplemented
        return add_bibliographies(self, other)

    def keys(self) -> List[str]:
        return [entry.key for entry in self.entries]


@dataclass(frozen=True)
class MergeOptions:
    fields_to_check: Tuple[str, ...] = (KEY_FIELD,)
    ignore_case: bool = True

    @classmethod
    def build(
        cls,
        fields_to_check: Union[str, Iterable[str], None] = (KEY_FIELD,),
        ignore_case: bool = True,
    ) -> MergeOptions:
        if not isinstance(ignore_case, bool):
            raise MergeOptionsError(f"ignore_case must be True or False, got {ignore_case!r}")
        return cls(fields_to_check=normalize_field_names(fields_to_check), ignore_case=ignore_case)

    @property
    def whole_record(self) -> bool:
        return ALL_FIELDS in self.fields_to_check


def normalize_field_names(fields_to_check: Union[str, Iterable[str], None]) -> Tuple[str, ...]:
    if fields_to_check is None:
        return ()
    if isinstance(fields_to_check, str):
        fields_to_check = fields_to_check.split(",")
    names: List[str] = []
    try:
        for name in fields_to_check:
            if not isinstance(name, str):
                raise MergeOptionsError(f"Field names must be strings, got {name!r}")
            name = name.strip().lower()
            if name:
                names.append(name)
    except TypeError as exc:
        raise MergeOptionsError(
            f"fields_to_check must be a string or an iterable of strings, got {fields_to_check!r}"
        ) from exc
    return tuple(dict.fromkeys(names))


_options_lock = threading.RLock()
_default_options = MergeOptions()


def get_default_merge_options() -> MergeOptions:
    with _options_lock:
        return _default_options


def set_default_merge_options(options: MergeOptions) -> MergeOptions:
    global _default_options
    if not isinstance(options, MergeOptions):
        raise MergeOptionsError(f"Expected MergeOptions, got {options!r}")
    with _options_lock:
        previous = _default_options
        _default_options = options
        return previous


@contextmanager
def merge_options(
    fields_to_check: Union[str, Iterable[str], None] = None,
    ignore_case: Optional[bool] = None,
) -> Iterator[MergeOptions]:
    """Temporarily replace the process-wide merge defaults.

    ``None`` keeps the current default for that option. The previous
    defaults are restored when the block exits, whether or not it raised.
    The lock covers the read/install and restore steps only, so other
    threads may read the defaults while the block runs.
    """
    with _options_lock:
        current = get_default_merge_options()
        override = MergeOptions.build(
            current.fields_to_check if fields_to_check is None else fields_to_check,
            current.ignore_case if ignore_case is None else ignore_case,
        )
        previous = set_default_merge_options(override)
    try:
        yield override
    finally:
        with _options_lock:
            set_default_merge_options(previous)


def fold_value(value: object, ignore_case: bool) -> object:
    if not ignore_case or value is MISSING:
        return value
    if isinstance(value, tuple):
        return tuple(item.lower() for item in value)
    return value.lower()


def field_signature(entry: Entry, names: Sequence[str], ignore_case: bool) -> Tuple[object, ...]:
    return tuple(fold_value(entry.get(name), ignore_case) for name in names)


def candidate_positions(
    first: Sequence[Entry], second: Sequence[Entry], fields_to_check: Sequence[str]
) -> List[int]:
    check_key = KEY_FIELD in fields_to_check
    check_type = BIBTYPE_FIELD in fields_to_check
    if check_key and check_type:
        pairs = {(entry.key, entry.bibtype) for entry in first}
        return [idx for idx, entry in enumerate(second) if (entry.key, entry.bibtype) in pairs]
    if check_key:
        keys = {entry.key for entry in first}
        return [idx for idx, entry in enumerate(second) if entry.key in keys]
    if check_type:
        types = {entry.bibtype for entry in first}
        return [idx for idx, entry in enumerate(second) if entry.bibtype in types]
    return list(range(len(second)))


def find_duplicates(
    first: Sequence[Entry],
    second: Sequence[Entry],
    fields_to_check: Sequence[str],
    ignore_case: bool,
) -> List[int]:
    """Return the 0-based positions in ``second`` that duplicate an entry of ``first``.

    Keys and entry types are compared exactly. The remaining fields are
    compared together as one tuple per entry, lower-cased when
    ``ignore_case`` is set; a field missing on both sides matches, a field
    missing on one side does not.
    """
    if not fields_to_check or ALL_FIELDS in fields_to_check:
        return []
    candidates = candidate_positions(first, second, fields_to_check)
    remaining = [name for name in fields_to_check if name not in RESERVED_FIELDS]
    if not candidates or not remaining:
        return candidates

    signatures = {field_signature(entry, remaining, ignore_case) for entry in first}
    return [
        idx
        for idx in candidates
        if field_signature(second[idx], remaining, ignore_case) in signatures
    ]


def suffix_letters(index: int) -> str:
    letters = []
    while index > 0:
        index -= 1
        letters.append(chr(ord("a") + (index % 26)))
        index //= 26
    return "".join(reversed(letters))


def uniquify_keys(entries: Sequence[Entry]) -> List[Entry]:
    used = {entry.key for entry in entries}
    seen: set[str] = set()
    result: List[Entry] = []
    for entry in entries:
        if entry.key not in seen:
            seen.add(entry.key)
            result.append(entry)
            continue
        counter = 1
        candidate = f"{entry.key}{suffix_letters(counter)}"
        while candidate in used:
            counter += 1
            candidate = f"{entry.key}{suffix_letters(counter)}"
        used.add(candidate)
        seen.add(candidate)
        result.append(replace(entry, key=candidate))
    return result


def merge_attributes(
    attrs1: Mapping[str, Sequence[str]], attrs2: Mapping[str, Sequence[str]]
) -> Dict[str, Tuple[str, ...]]:
    merged: Dict[str, Tuple[str, ...]] = {}
    for name in list(attrs1) + [name for name in attrs2 if name not in attrs1]:
        values = list(attrs1.get(name, ())) + list(attrs2.get(name, ()))
        merged[name] = tuple(dict.fromkeys(values))
    return merged


def entry_fingerprint(entry: Entry) -> Tuple[object, ...]:
    return (entry.bibtype, entry.key, tuple(sorted(entry.fields.items())))


def drop_repeated_entries(entries: Iterable[Entry]) -> List[Entry]:
    seen = set()
    result: List[Entry] = []
    for entry in entries:
        fingerprint = entry_fingerprint(entry)
        if fingerprint in seen:
            continue
        seen.add(fingerprint)
        result.append(entry)
    return result


def format_positions(positions: Iterable[int]) -> str:
    return ", ".join(str(idx + 1) for idx in positions)


def merge_bibliographies(
    first: Bibliography,
    second: Bibliography,
    options: Optional[MergeOptions] = None,
) -> Tuple[Bibliography, List[str]]:
    """Merge ``second`` into ``first``.

    Returns the merged bibliography and a list of advisory report lines.
    When ``options`` is omitted the process-wide defaults are used.
    """
    if options is None:
        options = get_default_merge_options()
    report: List[str] = []
    attrs1 = dict(first.attributes)
    attrs2 = dict(second.attributes)
    kept_second = list(second.entries)

    if not second.entries:
        return first, report

    if options.fields_to_check and not options.whole_record:
        duplicates = find_duplicates(
            first.entries, second.entries, options.fields_to_check, options.ignore_case
        )
        if len(duplicates) == len(second.entries):
            report.append(ONLY_DUPLICATES_MESSAGE)
            return first, report
        if duplicates:
            dropped = set(duplicates)
            kept_second = [entry for idx, entry in enumerate(second.entries) if idx not in dropped]
            report.append(DUPLICATES_FOUND_MESSAGE + format_positions(duplicates))

    combined = list(first.entries) + kept_second
    if options.whole_record:
        combined = drop_repeated_entries(combined)
    combined = uniquify_keys(combined)
    merged = Bibliography(entries=tuple(combined), attributes=merge_attributes(attrs1, attrs2))
    return merged, report


def merge(
    first: Bibliography,
    second: Bibliography,
    fields_to_check: Union[str, Iterable[str], None] = None,
    ignore_case: Optional[bool] = None,
) -> Tuple[Bibliography, List[str]]:
    with merge_options(fields_to_check=fields_to_check, ignore_case=ignore_case):
        return merge_bibliographies(first, second)


def build_report(
    first_count: int, second_count: int, merged_count: int, advisory: Sequence[str]
) -> List[str]:
    lines = []
    lines.append(f"First entries: {first_count}")
    lines.append(f"Second entries: {second_count}")
    lines.append(f"Output entries: {merged_count}")
    if advisory:
        lines.append("")
        lines.extend(advisory)
    return lines


def emit_report(lines: Iterable[str]) -> None:
    for line in lines:
        print(line, file=sys.stderr)


def add_bibliographies(first: Bibliography, second: Bibliography) -> Bibliography:
    merged, report = merge_bibliographies(first, second)
    emit_report(report)
    return merged


def has_balanced_outer_braces(value: str) -> bool:
    if not (value.startswith("{") and value.endswith("}")):
        return False
    depth = 0
    for idx, ch in enumerate(value):
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0 and idx != len(value) - 1:
                return False
    return depth == 0


def strip_outer_braces_quotes(value: str) -> str:
    if value is None:
        return ""
    text = value.strip()
    if not text:
        return ""
    if text.startswith('"') and text.endswith('"'):
        text = text[1:-1].strip()
    if has_balanced_outer_braces(text):
        text = text[1:-1].strip()
    return text


def render_value(value: FieldValue) -> str:
    if isinstance(value, tuple):
        return LIST_JOINER.join(value)
    return value


def format_entry(entry: Entry) -> str:
    lines = [f"@{entry.bibtype}{{{entry.key},"]
    ordered = [name for name in FIELD_ORDER if name in entry.fields]
    ordered += sorted(name for name in entry.fields if name not in FIELD_ORDER)
    for name in ordered:
        value = render_value(entry.fields[name])
        lines.append(f"  {name} = {{{value}}},")
    lines.append("}")
    return "\n".join(lines)


def format_bibliography(bib: Bibliography) -> str:
    blocks: List[str] = []
    for values in bib.attributes.values():
        blocks.extend(values)
    for entry in bib.entries:
        blocks.append(format_entry(entry))
    content = "\n\n".join(blocks).strip()
    if content:
        content += "\n"
    return content


def write_bibtex(path: str, bib: Bibliography) -> None:
    with open(path, "w", encoding="utf-8") as handle:
        handle.write(format_bibliography(bib))
