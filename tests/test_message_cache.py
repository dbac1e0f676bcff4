from datetime import timedelta

from hypothesis import given, strategies as st

from chatsync.schemas.message import Message
from chatsync.services.message_cache import MessageCache

from fakes import BASE_TIME, make_row


def msg(message_id, offset_s=0, **kwargs):
    return Message.model_validate(make_row(message_id, offset_s=offset_s, **kwargs))


def test_orders_newest_first_with_id_tiebreak():
    cache = MessageCache("c1")
    for m in (msg("b", 5), msg("a", 10), msg("d", 5), msg("c", 0)):
        cache.insert(m)
    assert cache.ids() == ["a", "b", "d", "c"]
    assert cache.head.id == "a"


def test_insert_rejects_duplicate_and_foreign_conversation():
    cache = MessageCache("c1")
    assert cache.insert(msg("m1"))
    assert not cache.insert(msg("m1", offset_s=30))
    assert not cache.insert(msg("x", conversation_id="c2"))
    assert cache.ids() == ["m1"]


def test_remove():
    cache = MessageCache("c1")
    cache.load([msg("m1", 1), msg("m2", 2)])
    assert cache.remove("m2")
    assert not cache.remove("m2")
    assert cache.ids() == ["m1"]
    assert "m2" not in cache


def test_merge_fills_receipts_once():
    cache = MessageCache("c1")
    cache.insert(msg("m1"))
    read = BASE_TIME + timedelta(minutes=1)
    merged = cache.merge(msg("m1", read_at=read))
    assert merged.read_at == read
    assert merged.delivered_at == read

    later = BASE_TIME + timedelta(minutes=5)
    assert cache.merge(msg("m1", read_at=later, delivered_at=later)) is None
    assert cache.get("m1").read_at == read


def test_merge_never_clears_receipts():
    read = BASE_TIME + timedelta(minutes=1)
    cache = MessageCache("c1")
    cache.insert(msg("m1", read_at=read))
    assert cache.merge(msg("m1")) is None
    assert cache.get("m1").read_at == read


def test_merge_keeps_immutable_fields():
    cache = MessageCache("c1")
    cache.insert(msg("m1", content="original"))
    cache.merge(msg("m1", content="edited", read_at=BASE_TIME))
    assert cache.get("m1").content == "original"


def test_merge_unknown_id_is_ignored():
    cache = MessageCache("c1")
    assert cache.merge(msg("ghost", read_at=BASE_TIME)) is None
    assert len(cache) == 0


def test_media_expiry_is_one_way():
    cache = MessageCache("c1")
    cache.insert(msg("m1", kind="image", media_type="image", media_path="c1/1_abc.jpg"))
    expired = cache.merge(msg("m1", kind="image", media_type="image", media_expired=True))
    assert expired.media_expired
    assert expired.media_path is None
    assert cache.merge(msg("m1", kind="image", media_type="image", media_path="c1/1_abc.jpg")) is None
    assert cache.get("m1").media_expired


def test_apply_receipts_only_touches_unread_messages():
    read = BASE_TIME + timedelta(minutes=1)
    cache = MessageCache("c1")
    cache.load([msg("m1", 1), msg("m2", 2, read_at=read)])
    now = BASE_TIME + timedelta(minutes=2)
    assert cache.apply_receipts(["m1", "m2", "missing"], now) == ["m1"]
    assert cache.get("m1").delivered_at == now
    assert cache.get("m2").read_at == read


@given(st.permutations([(f"m{i}", offset) for i, offset in enumerate([3, 1, 3, 0, 7, 1, 2])]))
def test_order_does_not_depend_on_arrival(items):
    cache = MessageCache("c1")
    for message_id, offset in items:
        cache.insert(msg(message_id, offset))
        cache.insert(msg(message_id, offset))
    expected = sorted(items, key=lambda item: (-item[1], item[0]))
    assert cache.ids() == [message_id for message_id, _ in expected]
