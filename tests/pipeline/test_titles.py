from src.pipeline.titles import TitleFormatter, basic_clean, truncate_title
from src.services.completion import CompletionServiceError
from tests.helpers.fakes import FakeCompletion


def test_truncate_title_cuts_at_word_boundary():
    title = "Riverside Food Bank opens a second pantry to serve weekend meals for families"
    cut = truncate_title(title, 40)
    assert len(cut) <= 40
    assert cut.endswith("…")
    assert cut == "Riverside Food Bank opens a second…"
    assert truncate_title("Short", 40) == "Short"


def test_basic_clean_decodes_entities_and_collapses_whitespace():
    assert basic_clean("  Food &amp; Shelter\n\t update  ") == "Food & Shelter update"


def test_formatter_uses_completion_result():
    completion = FakeCompletion({"formattedTitle": "Food &amp; Shelter Expands"})
    formatter = TitleFormatter(completion, max_length=80)

    assert formatter.format("food &amp; shelter expands!!") == "Food & Shelter Expands"
    assert 'format this title: "food &amp; shelter expands!!"' in completion.prompts[0]


def test_formatter_falls_back_to_basic_clean():
    failing = TitleFormatter(FakeCompletion(CompletionServiceError("down")))
    empty = TitleFormatter(FakeCompletion({"formattedTitle": "  "}))
    offline = TitleFormatter(None, max_length=10)

    assert failing.format("Food &amp; Shelter") == "Food & Shelter"
    assert empty.format("Food   Shelter") == "Food Shelter"
    assert len(offline.format("Food Shelter Expands Weekend Meals")) <= 10
    assert offline.format(None) == ""


def test_overlong_completion_titles_are_truncated():
    formatter = TitleFormatter(FakeCompletion({"formattedTitle": "word " * 40}), 30)
    assert len(formatter.format("anything")) <= 30
