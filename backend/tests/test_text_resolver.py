from types import SimpleNamespace

from storyforge.jobs.text_resolver import PAGE_SEPARATOR, combine_pages, resolve_page_text


def _page(page_number: int = 1, text=None, layout_data=None) -> SimpleNamespace:
    return SimpleNamespace(page_number=page_number, text=text, layout_data=layout_data)


def test_resolves_each_stored_shape() -> None:
    assert resolve_page_text(_page(layout_data={"text": ["One fine day,", "a fox woke."]})) == "One fine day, a fox woke."
    assert resolve_page_text(_page(text=["It was cold.", " ", None, "Snow fell."])) == "It was cold. Snow fell."
    assert resolve_page_text(_page(text="  Plain old text.  ")) == "Plain old text."


def test_layout_text_wins_over_text_field() -> None:
    page = _page(text="stale copy", layout_data={"text": ["fresh copy"]})
    assert resolve_page_text(page) == "fresh copy"


def test_empty_layout_falls_through_to_text_field() -> None:
    assert resolve_page_text(_page(text=["kept"], layout_data={"text": []})) == "kept"
    assert resolve_page_text(_page(text="kept", layout_data={"blocks": ["x"]})) == "kept"


def test_missing_text_resolves_to_empty_string() -> None:
    assert resolve_page_text(_page()) == ""
    assert resolve_page_text(_page(text=42)) == ""


def test_combine_orders_pages_and_skips_blank_ones() -> None:
    pages = [
        _page(3, text="C."),
        _page(1, text="A."),
        _page(2, text=""),
        _page(4, layout_data={"text": ["D."]}),
    ]
    assert combine_pages(pages) == PAGE_SEPARATOR.join(["A.", "C.", "D."])
    assert combine_pages([]) == ""
