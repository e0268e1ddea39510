import bibentry_merge
import core as bm

FIRST_BIB = """
@string{jgg = {Journal of Gnomes}}

@article{smith2020,
  author = {Smith, John},
  title = {Gnome Habits},
  journal = jgg,
  year = {2020},
}

@book{doe2019,
  author = {Doe, Jane},
  title = {Garden Lore},
  year = {2019},
}
"""

SECOND_BIB = """
@string{jgg = {Journal of Gnomes}}

@article{smith2020,
  author = {Smith, John},
  title = {Gnome Habits},
  journal = jgg,
  year = {2020},
}

@article{lee2021,
  author = {Lee, Kim},
  title = {garden lore},
  year = {2021},
}
"""


def write_inputs(tmp_path):
    first = tmp_path / "first.bib"
    second = tmp_path / "second.bib"
    first.write_text(FIRST_BIB, encoding="utf-8")
    second.write_text(SECOND_BIB, encoding="utf-8")
    return first, second


def test_load_bibliography_reads_entries_and_strings():
    bib = bibentry_merge.load_bibliography(FIRST_BIB)
    assert bib.keys() == ["smith2020", "doe2019"]
    assert bib[0].bibtype == "article"
    assert bib[0].fields["journal"] == "Journal of Gnomes"
    assert bib[1].fields["title"] == "Garden Lore"
    assert len(bib.attributes["strings"]) == 1
    assert bib.attributes["strings"][0].startswith("@string{jgg")


def test_cli_drops_duplicate_keys(tmp_path, capsys):
    first, second = write_inputs(tmp_path)
    output = tmp_path / "out.bib"
    report = tmp_path / "report.txt"

    status = bibentry_merge.main([str(first), str(second), str(output), "--report", str(report)])

    assert status == 0
    merged = bibentry_merge.parse_bibtex_file(str(output))
    assert merged.keys() == ["smith2020", "doe2019", "lee2021"]
    text = output.read_text(encoding="utf-8")
    assert text.count("@string{jgg") == 1
    stdout = capsys.readouterr().out
    assert "Output entries: 3" in stdout
    assert "Duplicate entries found in second collection at position(s): 1" in stdout
    assert report.read_text(encoding="utf-8").strip() == stdout.strip()


def test_cli_title_comparison_and_case(tmp_path, capsys):
    first, second = write_inputs(tmp_path)
    output = tmp_path / "out.bib"

    status = bibentry_merge.main(
        [str(first), str(second), str(output), "--fields", "title", "--no-ignore-case"]
    )
    assert status == 0
    merged = bibentry_merge.parse_bibtex_file(str(output))
    assert merged.keys() == ["smith2020", "doe2019", "lee2021"]

    status = bibentry_merge.main([str(first), str(second), str(output), "--fields", "title"])
    assert status == 0
    capsys.readouterr()
    merged = bibentry_merge.parse_bibtex_file(str(output))
    assert merged.keys() == ["smith2020", "doe2019"]


def test_cli_renames_colliding_keys(tmp_path):
    first, second = write_inputs(tmp_path)
    output = tmp_path / "out.bib"

    status = bibentry_merge.main([str(first), str(second), str(output), "--fields", ""])
    assert status == 0
    merged = bibentry_merge.parse_bibtex_file(str(output))
    assert merged.keys() == ["smith2020", "doe2019", "smith2020a", "lee2021"]


def test_cli_adds_extension_and_default_output(tmp_path):
    first, second = write_inputs(tmp_path)

    status = bibentry_merge.main([str(tmp_path / "first"), str(tmp_path / "second")])

    assert status == 0
    assert (tmp_path / "merged.bib").is_file()


def test_cli_missing_input_fails(tmp_path, capsys):
    first, _ = write_inputs(tmp_path)
    status = bibentry_merge.main([str(first), str(tmp_path / "absent.bib")])
    assert status == 1
    assert "Not found" in capsys.readouterr().out


def test_cli_leaves_defaults_untouched(tmp_path):
    first, second = write_inputs(tmp_path)
    original = bm.get_default_merge_options()
    bibentry_merge.main([str(first), str(second), str(tmp_path / "out.bib"), "--fields", "all"])
    assert bm.get_default_merge_options() == original


def test_format_entry_orders_fields():
    entry = bm.Entry("article", "a", {"zeta": "z", "year": "2020", "author": ("Smith, J", "Doe, A")})
    assert bm.format_entry(entry) == "\n".join(
        [
            "@article{a,",
            "  author = {Smith, J and Doe, A},",
            "  year = {2020},",
            "  zeta = {z},",
            "}",
        ]
    )


def test_format_entry_keeps_empty_fields():
    entry = bm.Entry("misc", "a", {"note": "", "title": "T", "keywords": ()})
    assert bm.format_entry(entry) == "\n".join(
        [
            "@misc{a,",
            "  title = {T},",
            "  note = {},",
            "  keywords = {},",
            "}",
        ]
    )
