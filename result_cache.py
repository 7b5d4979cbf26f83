"""
result_cache.py

Persisted memoization of expensive resampling results.

A result is stored under an explicit key (outcome, scheme, repetitions, seed and
a digest of the remaining settings):
a pickle payload plus a JSON sidecar describing the key and when it was
written. Recomputation is controlled by flags, never by the mere presence of a
file.
"""

import hashlib
import json
import logging
import pickle
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, Union

from exceptions import CacheMissError

logger = logging.getLogger(__name__)


def settings_digest(*configs) -> str:
    """Short stable hash of dataclass settings that change a stored result"""
    payload = json.dumps([asdict(c) for c in configs], sort_keys=True, default=str)
    return hashlib.sha1(payload.encode('utf-8')).hexdigest()[:12]


@dataclass(frozen=True)
class CacheKey:
    outcome: str
    scheme: str
    n_repetitions: int
    seed: int
    settings: str = ''

    @property
    def slug(self) -> str:
        slug = f"{self.outcome}_{self.scheme}_R{self.n_repetitions}_seed{self.seed}"
        return f"{slug}_{self.settings}" if self.settings else slug


class ResultCache:
    """Pickle-backed store of aggregate resampling results"""

    def __init__(self, cache_dir: Union[str, Path]):
        self.cache_dir = Path(cache_dir)

    def payload_path(self, key: CacheKey) -> Path:
        return self.cache_dir / f"{key.slug}.pkl"

    def metadata_path(self, key: CacheKey) -> Path:
        return self.cache_dir / f"{key.slug}.json"

    def contains(self, key: CacheKey) -> bool:
        return self.payload_path(key).exists()

    def load(self, key: CacheKey) -> Any:
        path = self.payload_path(key)
        if not path.exists():
            raise CacheMissError(
                f"No cached result for {key.slug} in {self.cache_dir}; "
                f"rerun with recomputation enabled"
            )
        with open(path, 'rb') as f:
            result = pickle.load(f)
        logger.info(f"Loaded cached result {key.slug}")
        return result

    def save(self, key: CacheKey, result: Any, settings: Optional[dict] = None) -> Path:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self.payload_path(key)
        with open(path, 'wb') as f:
            pickle.dump(result, f)

        metadata = {'key': asdict(key), 'written_at': datetime.now().isoformat(),
                    'result_type': type(result).__name__}
        if settings is not None:
            metadata['settings'] = settings
        with open(self.metadata_path(key), 'w') as f:
            json.dump(metadata, f, indent=2, default=str)

        logger.info(f"Cached result saved: {path}")
        return path

    def invalidate(self, key: CacheKey) -> bool:
        removed = False
        for path in (self.payload_path(key), self.metadata_path(key)):
            if path.exists():
                path.unlink()
                removed = True
        if removed:
            logger.info(f"Invalidated cached result {key.slug}")
        return removed

    def get_or_compute(self, key: CacheKey, compute: Callable[[], Any],
                       force: bool = False, allow_compute: bool = True,
                       settings: Optional[dict] = None) -> Any:
        """
        Return the cached result for key, computing and storing it when needed

        Args:
            key: cache key
            compute: zero-argument callable producing the result
            force: discard any cached result and recompute
            allow_compute: when False a miss raises CacheMissError
            settings: settings recorded in the JSON sidecar

        Raises:
            CacheMissError: nothing cached and recomputation disabled
        """
        if force:
            if not allow_compute:
                raise ValueError("force requires recomputation to be allowed")
            self.invalidate(key)
        elif self.contains(key):
            return self.load(key)
        elif not allow_compute:
            raise CacheMissError(f"No cached result for {key.slug} and recomputation is disabled")

        logger.info(f"Computing {key.slug}")
        result = compute()
        self.save(key, result, settings)
        return result
