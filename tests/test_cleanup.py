import pytest

from podio_fakes import FakePodio, app_field, make_item, text_field
from podio_migrator.cleanup import (
    CleanupEngine,
    apply_keep_strategy,
    detect_duplicate_groups,
    order_group_items,
    resolve_approved_groups,
)
from podio_migrator.exceptions import CleanupValidationError
from podio_migrator.models import CleanupRequest, DuplicateGroup, DuplicateItem, PodioItem


def _item(item_id: int, value: str, created_on: str | None) -> PodioItem:
    return PodioItem.from_api(make_item(item_id, [text_field("email", value)], created_on=created_on, title=value))


def _fake() -> FakePodio:
    fake = FakePodio()
    fake.add_app(5, [app_field(1, "email"), app_field(2, "when", "date")])
    fake.add_item(5, make_item(3, [text_field("email", "a@x.com")], created_on="2024-03-01 10:00:00"))
    fake.add_item(5, make_item(1, [text_field("email", "A@X.COM ")], created_on="2024-01-01 10:00:00"))
    fake.add_item(5, make_item(2, [text_field("email", "a@x.com")], created_on="2024-02-01 10:00:00"))
    fake.add_item(5, make_item(4, [text_field("email", "unique@x.com")], created_on="2024-01-05 10:00:00"))
    fake.add_item(5, make_item(5, [text_field("email", "")], created_on="2024-01-06 10:00:00"))
    fake.add_item(5, make_item(6, [text_field("email", "")], created_on="2024-01-07 10:00:00"))
    return fake


@pytest.mark.unit
class TestDetection:
    def test_groups_by_normalized_value_and_ignores_empty(self) -> None:
        items = [
            _item(1, "Foo", "2024-01-01 00:00:00"),
            _item(2, " foo", "2024-01-02 00:00:00"),
            _item(3, "", "2024-01-03 00:00:00"),
            _item(4, "", "2024-01-04 00:00:00"),
            _item(5, "bar", "2024-01-05 00:00:00"),
        ]
        groups = detect_duplicate_groups(items, "email")

        assert len(groups) == 1
        assert groups[0].match_value == "foo"
        assert groups[0].keep_item_id == 1
        assert groups[0].delete_item_ids == [2]

    def test_ordering_uses_creation_time_not_input_order(self) -> None:
        ordered = order_group_items(
            [
                DuplicateItem(9, "", "2024-05-01 00:00:00", "k"),
                DuplicateItem(7, "", None, "k"),
                DuplicateItem(8, "", "2024-01-01 00:00:00", "k"),
                DuplicateItem(6, "", "not a date", "k"),
            ]
        )
        assert [i.item_id for i in ordered] == [8, 9, 6, 7]

    def test_keep_newest(self) -> None:
        group = DuplicateGroup(
            "k",
            [DuplicateItem(1, "", "2024-01-01 00:00:00", "k"), DuplicateItem(2, "", "2024-02-01 00:00:00", "k")],
        )
        [result] = apply_keep_strategy([group], "newest")
        assert result.keep_item_id == 2
        assert result.delete_item_ids == [1]
        assert group.keep_item_id is None

    def test_unknown_strategy(self) -> None:
        with pytest.raises(CleanupValidationError):
            apply_keep_strategy([], "random")  # type: ignore[arg-type]

    def test_max_groups(self) -> None:
        items = [_item(n, value, None) for n, value in enumerate(["a", "a", "b", "b", "c", "c"], start=1)]
        assert [g.match_value for g in detect_duplicate_groups(items, "email", max_groups=2)] == ["a", "b"]


@pytest.mark.unit
class TestApproval:
    def _detected(self) -> list[DuplicateGroup]:
        items = [_item(1, "x", "2024-01-01 00:00:00"), _item(2, "x", "2024-01-02 00:00:00"), _item(3, "x", None)]
        return detect_duplicate_groups(items, "email")

    def test_approval_can_pick_another_keep_item(self) -> None:
        [resolved] = resolve_approved_groups(self._detected(), [{"match_value": "x", "items": [], "keep_item_id": 2}])
        assert resolved.keep_item_id == 2
        assert resolved.delete_item_ids == [1, 3]

    def test_default_keep_item(self) -> None:
        [resolved] = resolve_approved_groups(self._detected(), [{"match_value": "x", "items": []}])
        assert resolved.keep_item_id == 1

    def test_unknown_group_is_rejected(self) -> None:
        with pytest.raises(CleanupValidationError, match="not part of the detection result"):
            resolve_approved_groups(self._detected(), [{"match_value": "y", "items": []}])

    def test_keep_item_outside_group_is_rejected(self) -> None:
        with pytest.raises(CleanupValidationError, match="not a member"):
            resolve_approved_groups(self._detected(), [{"match_value": "x", "items": [], "keep_item_id": 99}])


@pytest.mark.unit
class TestCleanupEngine:
    def test_oldest_keep_deletes_two_of_three(self) -> None:
        fake = _fake()
        engine = CleanupEngine(fake)
        request = CleanupRequest(app_id=5, match_field="email", mode="automated")

        detection = engine.detect(request)
        assert detection.items_scanned == 6
        assert len(detection.groups) == 1
        assert detection.groups[0].keep_item_id == 1
        assert detection.groups[0].delete_item_ids == [2, 3]

        result = engine.delete(detection.groups, request)
        assert result.success_count == 2
        assert sorted(i["item_id"] for i in fake.items[5]) == [1, 4, 5, 6]

    def test_second_run_is_a_no_op(self) -> None:
        fake = _fake()
        engine = CleanupEngine(fake)
        request = CleanupRequest(app_id=5, match_field="email", mode="automated")
        engine.delete(engine.detect(request).groups, request)

        again = engine.detect(request)
        assert again.groups == []
        assert engine.delete(again.groups, request).success_count == 0

    def test_detect_stops_when_asked(self) -> None:
        engine = CleanupEngine(_fake())
        result = engine.detect(CleanupRequest(app_id=5, match_field="email"), should_stop=lambda: True)
        assert result.stopped
        assert result.groups == []

    def test_validate_missing_field(self) -> None:
        with pytest.raises(CleanupValidationError, match="not found"):
            CleanupEngine(_fake()).validate(CleanupRequest(app_id=5, match_field="nope"))

    def test_validate_unsupported_type_needs_override(self) -> None:
        engine = CleanupEngine(_fake())
        with pytest.raises(CleanupValidationError, match="allow_unsupported_match_type"):
            engine.validate(CleanupRequest(app_id=5, match_field="when"))

        warnings = engine.validate(CleanupRequest(app_id=5, match_field="when", allow_unsupported_match_type=True))
        assert len(warnings) == 1

    def test_validate_rejects_unknown_mode(self) -> None:
        request = CleanupRequest(app_id=5, match_field="email", mode="yolo")  # type: ignore[arg-type]
        with pytest.raises(CleanupValidationError, match="cleanup mode"):
            CleanupEngine(_fake()).validate(request)
