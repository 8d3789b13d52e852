from chooseamovie.utils import build_title_key, extract_year, load_json, parse_title_key


def test_build_title_key_basic():
    assert build_title_key("movie", 550) == "tmdb:movie:550"
    assert build_title_key("tv", "1399") == "tmdb:tv:1399"


def test_build_title_key_rejects_invalid_ids():
    assert build_title_key("movie", 0) == ""
    assert build_title_key("movie", -3) == ""
    assert build_title_key("movie", "12abc") == ""
    assert build_title_key("person", 5) == ""


def test_parse_title_key_round_trips_components():
    parsed = parse_title_key(" tmdb:tv:42 ")
    assert parsed is not None
    assert (parsed.provider, parsed.type, parsed.id) == ("tmdb", "tv", 42)
    assert parse_title_key("imdb:tt0133093") is None
    assert parse_title_key("tmdb:movie:0") is None


def test_extract_year():
    assert extract_year("1999-03-30") == "1999"
    assert extract_year("") is None
    assert extract_year("soon") is None


def test_load_json_treats_corruption_as_missing():
    assert load_json('{"a": 1}') == {"a": 1}
    assert load_json("{not json") is None
    assert load_json(None) is None
