# tests/test_url_resolver.py
"""Tests for redirect target verification."""
from __future__ import annotations

import pytest

from storefront.runtime.errors import ResolutionAmbiguous
from storefront.runtime.models import CandidateRecord, Classification, PageSnapshot
from storefront.runtime.url_resolver import (
    AvailableContent,
    UrlResolver,
    closest_handle,
    normalize_path,
)


def _available(*items, qas=(), page=None) -> AvailableContent:
    return AvailableContent(
        main_content=[CandidateRecord(id=str(n), score=1.0, metadata=m) for n, m in enumerate(items)],
        relevant_qas=[CandidateRecord(id=f"qa{n}", score=1.0, metadata=m) for n, m in enumerate(qas)],
        page=page,
    )


_WINTER = {"type": "collection", "handle": "winter-sports-collection", "title": "Winter Sports"}
_COLLECTION = Classification(type="collection", category="discovery")


def test_policy_page_normalized():
    assert UrlResolver().resolve("/pages/return-policy") == "/policies/return-policy"


def test_unknown_collection_blocked():
    assert UrlResolver().resolve("/collections/nonexistent-xyz", available=_available(_WINTER)) == ""


def test_verify_raises_resolution_ambiguous():
    with pytest.raises(ResolutionAmbiguous):
        UrlResolver().verify("/collections/nonexistent-xyz", available=_available(_WINTER))


def test_fabricated_handle_snaps_to_closest_known_collection():
    url = UrlResolver().resolve(
        "/collections/winter-gear", "do you have winter gear", _COLLECTION, _available(_WINTER)
    )
    assert url == "/collections/winter-sports-collection"


def test_absolute_url_reduced_to_verified_path():
    product = {"type": "product", "handle": "alpine-jacket"}
    url = UrlResolver().resolve("https://shop.example.com/products/alpine-jacket/", available=_available(product))
    assert url == "/products/alpine-jacket"


def test_standard_paths_from_query_phrasing():
    resolver = UrlResolver()
    assert resolver.resolve("/account/orderz", "take me to my orders") == "/account/orders"
    assert resolver.resolve(None, "go to the cart") == "/cart"
    assert resolver.resolve("/checkout") == "/checkout"


def test_handles_discovered_from_page_links_and_text():
    page = PageSnapshot(
        url="/collections/sale",
        full_text="See our /products/trail-boots and more",
        links=["/pages/about-us"],
    )
    resolver = UrlResolver()
    available = _available(page=page)
    assert resolver.resolve("/products/trail-boots", available=available) == "/products/trail-boots"
    assert resolver.resolve("/pages/about-us", available=available) == "/pages/about-us"
    assert resolver.resolve("/collections/sale", available=available) == "/collections/sale"


def test_qa_urls_count_as_available():
    available = _available(qas=[{"question": "Sizing?", "url": "/blogs/news/sizing-guide"}])
    assert UrlResolver().resolve("/blogs/news/sizing-guide", available=available) == "/blogs/news/sizing-guide"


def test_generic_blog_question_goes_to_only_blog():
    post = {"type": "post", "handle": "spring-lookbook", "blog_handle": "news"}
    url = UrlResolver().resolve("/blogs/journal", "what blogs do you have", available=_available(post))
    assert url == "/blogs/news"


def test_plural_catalogue_words_fall_back_to_all_products():
    assert UrlResolver().resolve("/collections/everything-ever", "show me all your products") == "/collections/all"


def test_bare_handle_uses_classified_type():
    url = UrlResolver().resolve("winter-sports-collection", "", _COLLECTION, _available(_WINTER))
    assert url == "/collections/winter-sports-collection"


def test_closest_handle_requires_shared_word():
    assert closest_handle("winter-gear", ["winter-sports-collection"]) == "winter-sports-collection"
    assert closest_handle("nonexistent-xyz", ["winter-sports-collection"]) is None
    assert closest_handle("sale", ["sale"]) == "sale"


def test_normalize_path():
    assert normalize_path("https://x.com/Collections/All/?q=1") == "/collections/all"
    assert normalize_path("products/a") == "/products/a"
