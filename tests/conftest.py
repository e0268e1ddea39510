import pytest

import core as bm


@pytest.fixture(autouse=True)
def restore_default_options():
    previous = bm.get_default_merge_options()
    yield
    bm.set_default_merge_options(previous)


def make_entry(key, bibtype="article", **fields):
    return bm.Entry(bibtype=bibtype, key=key, fields=fields)


def make_bib(*entries, **attributes):
    return bm.Bibliography(entries=tuple(entries), attributes=attributes)
