import pytest

from fakes import FakeClock
from spanish_tutor.audio.cache import AudioCache


def test_cache_evicts_least_recently_used_and_releases_it() -> None:
    clock = FakeClock()
    cache = AudioCache(capacity=2, clock=clock)
    first, _ = cache.put("assistant-0-reply", b"aa")
    cache.put("assistant-1-reply", b"bbb")

    clock.advance(1)
    assert cache.get("assistant-0-reply") is first
    cache.put("assistant-2-reply", b"c")

    assert "assistant-1-reply" not in cache
    assert "assistant-0-reply" in cache
    assert len(cache) == 2
    assert cache.total_bytes == 3
    assert first.released is False


def test_cache_never_evicts_playing_entry() -> None:
    cache = AudioCache(capacity=1)
    playing, cached = cache.put("assistant-0-reply", b"speech")
    cache.mark_playing("assistant-0-reply", True)

    overflow, overflow_cached = cache.put("assistant-1-reply", b"more")

    assert cached is True
    assert overflow_cached is False
    assert cache.get("assistant-0-reply") is playing
    assert "assistant-1-reply" not in cache
    assert playing.released is False


def test_cache_replacing_entry_releases_previous_handle() -> None:
    cache = AudioCache()
    old, _ = cache.put("assistant-0-reply", b"old")
    new, cached = cache.put("assistant-0-reply", b"new")

    assert cached is True
    assert old.released is True
    assert cache.get("assistant-0-reply") is new
    assert new.data == b"new"


def test_cache_does_not_replace_entry_while_it_plays() -> None:
    cache = AudioCache()
    current, _ = cache.put("assistant-0-reply", b"old")
    cache.mark_playing("assistant-0-reply", True)

    replacement, cached = cache.put("assistant-0-reply", b"new")

    assert cached is False
    assert current.released is False
    assert cache.get("assistant-0-reply") is current
    assert replacement is not current


def test_cache_clear_releases_everything() -> None:
    cache = AudioCache()
    resources = [cache.put(f"assistant-{i}-reply", b"x")[0] for i in range(3)]

    cache.clear()

    assert len(cache) == 0
    assert all(resource.released for resource in resources)
    with pytest.raises(ValueError):
        resources[0].data


def test_cache_rejects_zero_capacity() -> None:
    with pytest.raises(ValueError):
        AudioCache(capacity=0)
