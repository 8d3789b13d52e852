from __future__ import annotations

import pytest

from chooseamovie.certifications import UNSUPPORTED, is_allowed, normalize_certification
from chooseamovie.models import GroupPolicy


def test_normalize_certification_handles_aliases() -> None:
    assert normalize_certification("movie", "pg13") == "PG-13"
    assert normalize_certification("movie", " r ") == "R"
    assert normalize_certification("tv", "tvma") == "TV-MA"
    assert normalize_certification("tv", "TV-Y7") == "TV-Y7"


def test_normalize_certification_blank_is_unknown() -> None:
    assert normalize_certification("movie", None) is None
    assert normalize_certification("movie", "   ") is None
    assert normalize_certification("tv", "") is None


def test_normalize_certification_flags_unrecognised_values() -> None:
    assert normalize_certification("movie", "NC-17") == UNSUPPORTED
    assert normalize_certification("movie", "TV-MA") == UNSUPPORTED
    assert normalize_certification("tv", "PG") == UNSUPPORTED


def test_unknown_certification_is_allowed() -> None:
    strict = GroupPolicy(allow_g=False, allow_pg=False, allow_pg13=False, allow_r=False)

    assert is_allowed(strict, "movie", None) is True
    assert is_allowed(strict, "movie", "") is True


@pytest.mark.parametrize("raw", ["NC-17", "NR", "Unrated", "18", "M"])
def test_unsupported_film_certification_always_denied(raw: str) -> None:
    permissive = GroupPolicy()

    assert is_allowed(permissive, "movie", raw) is False


@pytest.mark.parametrize("raw", ["TV-Y7-FV", "MA15+", "R"])
def test_unsupported_tv_certification_always_denied(raw: str) -> None:
    assert is_allowed(GroupPolicy(), "tv", raw) is False


def test_policy_flags_decide_recognised_ratings() -> None:
    policy = GroupPolicy.model_validate(
        {"allowG": True, "allowPG": True, "allowPG13": False, "allowR": False, "allowTVMA": False}
    )

    assert is_allowed(policy, "movie", "G") is True
    assert is_allowed(policy, "movie", "PG") is True
    assert is_allowed(policy, "movie", "PG-13") is False
    assert is_allowed(policy, "movie", "R") is False
    assert is_allowed(policy, "tv", "TV-14") is True
    assert is_allowed(policy, "tv", "TVMA") is False
