from src.pipeline.images import (
    ImageCandidate,
    ImageSelector,
    estimate_area,
    harvest_images,
    is_content_image,
    rank_images,
)
from src.services.completion import CompletionServiceError
from tests.helpers.fakes import FakeCompletion, FakeFetcher

BASE = "https://riverside.example.org/news/pantry"

PAGE = """
<html><head><style>.hero { background-image: url('/img/hero.jpg'); }</style></head>
<body>
  <img src="/img/pantry.jpg" width="1200" height="800" alt="New pantry">
  <img data-src="https://cdn.example.org/lazy.jpg" alt="Volunteers">
  <img src="https://pixel.example.org/tracking/1x1.gif">
  <img src="data:image/png;base64,AAAA">
  <img src="/img/pantry.jpg" alt="duplicate">
  <div style="background: #fff url(/img/banner.png) no-repeat;"></div>
</body></html>
"""


def test_harvest_collects_every_source_once():
    markdown = "Intro ![Shelves](https://cdn.example.org/shelves.jpg) more"

    candidates = harvest_images(html=PAGE, markdown=markdown, base_url=BASE)

    urls = [candidate.url for candidate in candidates]
    assert urls == [
        "https://riverside.example.org/img/pantry.jpg",
        "https://cdn.example.org/lazy.jpg",
        "https://riverside.example.org/img/banner.png",
        "https://riverside.example.org/img/hero.jpg",
        "https://cdn.example.org/shelves.jpg",
    ]
    assert candidates[0].area == 1200 * 800
    assert [c.source for c in candidates[2:]] == ["inline_style", "css", "markdown"]


def test_non_content_images_are_filtered():
    assert not is_content_image("https://ads.doubleclick.net/banner.jpg")
    assert not is_content_image("https://example.org/spacer.gif")
    assert not is_content_image("https://example.org/a.jpg", alt="tracking pixel")
    assert is_content_image("https://example.org/pantry.jpg", alt="Pantry shelves")


def test_estimate_area_uses_content_length():
    fetcher = FakeFetcher(sizes={"https://cdn.example.org/a.jpg": 300_000})

    assert round(estimate_area("https://cdn.example.org/a.jpg", fetcher)) == 100_000
    assert estimate_area("https://cdn.example.org/missing.jpg", fetcher) == 0.0


def test_rank_images_checks_unknown_sizes_only():
    fetcher = FakeFetcher(
        sizes={
            "https://cdn.example.org/big.jpg": 3_000_000,
            "https://cdn.example.org/small.jpg": 3_000,
        }
    )
    ranked = rank_images(
        [
            ImageCandidate(url="https://cdn.example.org/small.jpg"),
            ImageCandidate(url="https://cdn.example.org/sized.jpg", width=100, height=100),
            ImageCandidate(url="https://cdn.example.org/big.jpg"),
        ],
        fetcher,
    )

    assert [c.url for c in ranked] == [
        "https://cdn.example.org/big.jpg",
        "https://cdn.example.org/sized.jpg",
        "https://cdn.example.org/small.jpg",
    ]
    assert ("HEAD", "https://cdn.example.org/sized.jpg") not in fetcher.calls


def test_selector_honours_completion_index():
    fetcher = FakeFetcher(
        sizes={"https://cdn.example.org/a.jpg": 30_000, "https://cdn.example.org/b.jpg": 3_000}
    )
    completion = FakeCompletion({"selectedIndex": 2, "reason": "Shows the pantry"})
    selector = ImageSelector(completion, fetcher)

    selection = selector.select(
        ["https://cdn.example.org/b.jpg", "https://cdn.example.org/a.jpg"],
        "Pantry opens",
        "Summary",
    )

    # Candidates are ranked largest first before the completion sees them.
    assert selection.images == [
        "https://cdn.example.org/a.jpg",
        "https://cdn.example.org/b.jpg",
    ]
    assert selection.url == "https://cdn.example.org/b.jpg"
    assert selection.index == 1
    assert selection.reasoning == "Shows the pantry"
    assert not selection.used_fallback
    assert '1. https://cdn.example.org/a.jpg (~100x100, alt: "")' in completion.prompts[0]


def test_selector_falls_back_to_largest_image():
    urls = ["https://cdn.example.org/b.jpg", "https://cdn.example.org/a.jpg"]
    fetcher = FakeFetcher(
        sizes={"https://cdn.example.org/a.jpg": 30_000, "https://cdn.example.org/b.jpg": 3_000}
    )

    for response in (
        CompletionServiceError("timeout"),
        {"selectedIndex": 9},
        {"selectedIndex": "first"},
    ):
        selection = ImageSelector(FakeCompletion(response), fetcher).select(urls, "T")
        assert selection.used_fallback
        assert selection.url == "https://cdn.example.org/a.jpg"

    offline = ImageSelector(None, fetcher).select(urls, "T")
    assert offline.used_fallback
    assert offline.url == "https://cdn.example.org/a.jpg"


def test_selector_short_circuits_small_inputs():
    selector = ImageSelector(FakeCompletion())

    assert selector.select([], "T") is None
    only = selector.select(["https://cdn.example.org/a.jpg"], "T")
    assert only.url == "https://cdn.example.org/a.jpg"
    assert only.reasoning == "Only one image available"
