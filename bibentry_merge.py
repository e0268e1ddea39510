#!/usr/bin/env python3
"""Merge two BibTeX files, dropping duplicates of the first, using bibtexparser for parsing."""

from __future__ import annotations

import argparse
import os
import sys
from typing import Dict, List, Optional, Sequence

import core as bm


def attribute_blocks(bib_db) -> Dict[str, List[str]]:
    from bibtexparser.bibdatabase import COMMON_STRINGS

    strings: List[str] = []
    for name, value in (getattr(bib_db, "strings", None) or {}).items():
        value = str(value)
        if COMMON_STRINGS.get(name) == value:
            continue
        strings.append(f"@string{{{name} = {{{value}}}}}")

    preambles: List[str] = []
    for preamble in getattr(bib_db, "preambles", None) or []:
        text = bm.strip_outer_braces_quotes(str(preamble))
        if text:
            preambles.append(f"@preamble{{{{{text}}}}}")

    comments: List[str] = []
    for comment in getattr(bib_db, "comments", None) or []:
        if comment is None:
            continue
        comment_text = str(comment).strip()
        if not comment_text or comment_text in {"{", "}"}:
            continue
        comments.append(f"@comment{{{comment_text}}}")

    attributes: Dict[str, List[str]] = {}
    if strings:
        attributes["strings"] = strings
    if preambles:
        attributes["preambles"] = preambles
    if comments:
        attributes["comments"] = comments
    return attributes


def load_bibliography(text: str) -> bm.Bibliography:
    try:
        import bibtexparser
        from bibtexparser.bparser import BibTexParser
    except ImportError as exc:
        raise RuntimeError(
            "bibtexparser is required. Install with: pip install bibtexparser"
        ) from exc

    parser = BibTexParser(common_strings=True)
    parser.ignore_nonstandard_types = False
    parser.homogenize_fields = False

    bib_db = bibtexparser.loads(text, parser=parser)

    entries: List[bm.Entry] = []
    for raw in bib_db.entries:
        bibtype = (raw.get("ENTRYTYPE") or "").lower().strip()
        key = (raw.get("ID") or raw.get("id") or "").strip()
        if not bibtype or not key:
            continue
        fields: Dict[str, str] = {}
        for name, value in raw.items():
            if name in {"ENTRYTYPE", "ID"}:
                continue
            if value is None:
                continue
            fields[name.lower()] = bm.strip_outer_braces_quotes(str(value).strip())
        entries.append(bm.Entry(bibtype=bibtype, key=key, fields=fields))

    return bm.Bibliography(entries=tuple(entries), attributes=attribute_blocks(bib_db))


def parse_bibtex_file(path: str) -> bm.Bibliography:
    with open(path, "r", encoding="utf-8") as handle:
        text = handle.read()
    return load_bibliography(text)


def ensure_bib_extension(path: str) -> str:
    if path.lower().endswith(".bib"):
        return path
    return f"{path}.bib"


def resolve_existing_bib_path(value: str) -> str:
    candidate = ensure_bib_extension(value.strip())
    if os.path.isfile(candidate):
        return candidate
    raise RuntimeError(f"Not found: {candidate}")


def default_output_path(first_bib: str) -> str:
    dir_path = os.path.dirname(first_bib) or "."
    return os.path.join(dir_path, "merged.bib")


def build_parser() -> argparse.ArgumentParser:
    defaults = bm.get_default_merge_options()
    parser = argparse.ArgumentParser(
        description="Merge two BibTeX files, discarding duplicates and keeping keys unique."
    )
    parser.add_argument("first_bib", help="Path to the first .bib file (its entries always win)")
    parser.add_argument("second_bib", help="Path to the .bib file merged into the first")
    parser.add_argument("output_bib", nargs="?", help="Path to output .bib file")
    parser.add_argument(
        "--fields",
        default=",".join(defaults.fields_to_check),
        help=(
            "Comma-separated fields compared to detect duplicates; may include "
            "'key' and 'bibtype', or 'all' for whole-entry comparison (default: %(default)s)"
        ),
    )
    parser.add_argument(
        "--ignore-case",
        dest="ignore_case",
        action="store_true",
        default=defaults.ignore_case,
        help="Ignore case when comparing fields",
    )
    parser.add_argument(
        "--no-ignore-case",
        dest="ignore_case",
        action="store_false",
        help="Compare fields case-sensitively",
    )
    parser.add_argument(
        "--report",
        help="Optional path to write the merge report (also prints to stdout)",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        first_path = resolve_existing_bib_path(args.first_bib)
        second_path = resolve_existing_bib_path(args.second_bib)
        first = parse_bibtex_file(first_path)
        second = parse_bibtex_file(second_path)
    except (RuntimeError, OSError) as exc:
        print(str(exc))
        return 1

    output_path = args.output_bib or default_output_path(first_path)
    try:
        merged, advisory = bm.merge(
            first, second, fields_to_check=args.fields, ignore_case=args.ignore_case
        )
    except bm.MergeOptionsError as exc:
        print(str(exc))
        return 1
    bm.write_bibtex(output_path, merged)

    report_text = "\n".join(bm.build_report(len(first), len(second), len(merged), advisory))
    print(report_text)
    if args.report:
        with open(args.report, "w", encoding="utf-8") as handle:
            handle.write(report_text + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
