import json

import pytest

from analysis_config import AUCConfig, PredictionErrorConfig
from exceptions import CacheMissError
from result_cache import CacheKey, ResultCache, settings_digest

KEY = CacheKey('violent', 'cv10', 1000, 20130325)


class Counter:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1
        return {'value': self.calls}


def test_slug_names_every_key_field():
    assert KEY.slug == 'violent_cv10_R1000_seed20130325'


def test_compute_once_then_load(tmp_path):
    cache = ResultCache(tmp_path)
    compute = Counter()
    assert cache.get_or_compute(KEY, compute) == {'value': 1}
    assert cache.get_or_compute(KEY, compute) == {'value': 1}
    assert compute.calls == 1

    metadata = json.loads(cache.metadata_path(KEY).read_text())
    assert metadata['key']['n_repetitions'] == 1000


def test_force_recomputes(tmp_path):
    cache = ResultCache(tmp_path)
    compute = Counter()
    cache.get_or_compute(KEY, compute)
    assert cache.get_or_compute(KEY, compute, force=True) == {'value': 2}
    assert cache.load(KEY) == {'value': 2}


def test_keys_differing_in_seed_do_not_collide(tmp_path):
    cache = ResultCache(tmp_path)
    cache.save(KEY, 'a')
    other = CacheKey('violent', 'cv10', 1000, 1)
    assert not cache.contains(other)
    cache.save(other, 'b')
    assert cache.load(KEY) == 'a'


def test_miss_with_compute_disabled(tmp_path):
    cache = ResultCache(tmp_path)
    with pytest.raises(CacheMissError):
        cache.get_or_compute(KEY, Counter(), allow_compute=False)
    with pytest.raises(CacheMissError):
        cache.load(KEY)


def test_force_requires_compute(tmp_path):
    with pytest.raises(ValueError):
        ResultCache(tmp_path).get_or_compute(KEY, Counter(), force=True, allow_compute=False)


def test_invalidate(tmp_path):
    cache = ResultCache(tmp_path)
    cache.save(KEY, [1, 2, 3])
    assert cache.invalidate(KEY)
    assert not cache.contains(KEY)
    assert not cache.metadata_path(KEY).exists()
    assert not cache.invalidate(KEY)


def test_settings_digest_tracks_every_setting():
    base = settings_digest(PredictionErrorConfig())
    assert base == settings_digest(PredictionErrorConfig())
    assert base != settings_digest(PredictionErrorConfig(max_time=36.0))
    assert base != settings_digest(PredictionErrorConfig(include_reference=False))
    assert settings_digest(AUCConfig()) != settings_digest(AUCConfig(time_grid=(1, 30)))


def test_settings_are_part_of_the_key(tmp_path):
    cache = ResultCache(tmp_path)
    key = CacheKey('violent', 'cv10', 1000, 20130325, settings_digest(PredictionErrorConfig()))
    assert key.slug.endswith(key.settings)
    cache.get_or_compute(key, Counter(), settings={'max_time': 48.0})

    metadata = json.loads(cache.metadata_path(key).read_text())
    assert metadata['key']['settings'] == key.settings
    assert metadata['settings'] == {'max_time': 48.0}

    changed = CacheKey('violent', 'cv10', 1000, 20130325,
                       settings_digest(PredictionErrorConfig(max_time=36.0)))
    with pytest.raises(CacheMissError):
        cache.get_or_compute(changed, Counter(), allow_compute=False)
