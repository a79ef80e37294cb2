from decimal import Decimal

import pytest

from podio_fakes import FakePodio, make_item, text_field
from podio_migrator.models import PodioItem
from podio_migrator.normalize import EMPTY, PrefetchCache, item_match_key, normalize_value


@pytest.mark.unit
class TestNormalizeValue:
    @pytest.mark.parametrize("value", [None, "", 0, False, "   ", 0.0, "0", "0.4", -0.4])
    def test_empty_values(self, value: object) -> None:
        assert normalize_value(value) == EMPTY

    def test_strings_are_trimmed_and_lowercased(self) -> None:
        assert normalize_value("  ACME Corp ") == "acme corp"
        assert normalize_value("acme corp") == normalize_value("ACME CORP")

    def test_numbers_round_half_away_from_zero(self) -> None:
        assert normalize_value(123.5) == "124"
        assert normalize_value(-123.5) == "-124"
        assert normalize_value(2.5) == "3"
        assert normalize_value(123.4) == "123"

    def test_podio_numeric_strings_match_numbers(self) -> None:
        assert normalize_value("123.5000") == normalize_value(124)
        assert normalize_value(" 42 ") == "42"
        assert normalize_value(Decimal("7.50")) == "8"

    @pytest.mark.parametrize(
        ("value", "expected"),
        [
            ("1e30", str(10**30)),
            (1e30, str(10**30)),
            (-1e30, str(-(10**30))),
            (Decimal("-1E+30"), str(-(10**30))),
            ("1234567890123456789012345678901", "1234567890123456789012345678901"),
            ("-1234567890123456789012345678901.5", "-1234567890123456789012345678902"),
            ("99999999999999999999999999999.5", "100000000000000000000000000000"),
        ],
    )
    def test_numbers_wider_than_default_precision(self, value: object, expected: str) -> None:
        assert normalize_value(value) == expected

    def test_huge_exponents_keep_canonical_text(self) -> None:
        assert normalize_value("1E+5000") == "1e+5000"
        assert normalize_value(10**30) == normalize_value("1e30")

    def test_numeric_strings_are_parsed_strictly(self) -> None:
        assert normalize_value("12abc") == "12abc"
        assert normalize_value("1,000") == "1,000"

    def test_booleans(self) -> None:
        assert normalize_value(True) == "true"
        assert normalize_value(False) == EMPTY

    def test_lists_are_sorted_and_joined(self) -> None:
        assert normalize_value(["b", "A", ""]) == "a||b"
        assert normalize_value([3, 1]) == normalize_value([1, 3])
        assert normalize_value([None, ""]) == EMPTY

    def test_reference_dicts(self) -> None:
        assert normalize_value({"item_id": 17, "title": "x"}) == "17"
        assert normalize_value({"profile_id": 5}) == "5"
        assert normalize_value({"value": " Foo "}) == "foo"

    def test_item_match_key(self) -> None:
        item = PodioItem.from_api(make_item(1, [text_field("email", " Jane@Example.com ")]))
        assert item_match_key(item, "email") == "jane@example.com"
        assert item_match_key(item, "missing") == EMPTY


@pytest.mark.unit
class TestPrefetchCache:
    def _client(self) -> FakePodio:
        fake = FakePodio()
        fake.add_app(2, [])
        fake.add_item(2, make_item(10, [text_field("code", "ABC")]))
        fake.add_item(2, make_item(11, [text_field("code", "abc ")]))
        fake.add_item(2, make_item(12, [text_field("code", "xyz")]))
        fake.add_item(2, make_item(13, [text_field("code", "")]))
        return fake

    def test_prefetch_indexes_by_normalized_value(self) -> None:
        cache = PrefetchCache()
        cache.prefetch(self._client(), 2, "code")

        assert cache.stats.total_items == 4
        assert cache.stats.unique_keys == 2
        assert cache.stats.duplicate_keys == 1
        found = cache.lookup(" ABC")
        assert found is not None
        assert found.item_id == 10
        assert cache.is_duplicate("XYZ")
        assert cache.lookup("nothing") is None
        assert cache.lookup("") is None

    def test_hit_rate(self) -> None:
        cache = PrefetchCache()
        cache.prefetch(self._client(), 2, "code")
        cache.lookup("abc")
        cache.lookup("missing")
        assert cache.stats.hits == 1
        assert cache.stats.misses == 1
        assert cache.stats.hit_rate == 0.5

    def test_entries_expire_after_ttl(self) -> None:
        now = [1000.0]
        cache = PrefetchCache(ttl=60, clock=lambda: now[0])
        cache.prefetch(self._client(), 2, "code")
        assert not cache.is_expired()

        now[0] += 61
        assert cache.is_expired()
        assert cache.lookup("abc") is None

    def test_never_prefetched_cache_is_expired(self) -> None:
        assert PrefetchCache().is_expired()

    def test_add_with_explicit_key(self) -> None:
        cache = PrefetchCache(match_field="code")
        cache.add(PodioItem(item_id=-1), key="new")
        found = cache.lookup("NEW")
        assert found is not None
        assert found.item_id == -1
        assert len(cache) == 1
