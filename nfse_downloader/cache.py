"""
Cache de duplicatas.

Responsável por:
1. Listagens de diretório (TTL curto, os buckets mudam a cada download)
2. Hashes MD5 por arquivo
3. Dados extraídos do XML (Numero, CodigoVerificacao, competência)
4. Veredictos de duplicata por (artefato, destino, estratégia)

As entradas são apenas substituídas, nunca atualizadas parcialmente, então
não é preciso lock dentro de um mesmo event loop.
"""

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Hashable, Optional, Tuple, Union

from .config import Config

logger = logging.getLogger(__name__)

_MISSING = object()


@dataclass
class CacheStats:
    """Estatísticas de um cache."""
    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total * 100


class TTLCache:
    """
    Cache em memória com TTL e tamanho máximo.

    Ao exceder max_size, as entradas mais antigas (por inserção) são
    descartadas primeiro.
    """

    def __init__(
        self,
        name: str,
        ttl: float,
        max_size: int,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._data: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()
        self.stats = CacheStats()

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._data.get(key, _MISSING)
        if entry is _MISSING:
            self.stats.misses += 1
            return default

        stored_at, value = entry
        if self._clock() - stored_at > self.ttl:
            del self._data[key]
            self.stats.expirations += 1
            self.stats.misses += 1
            return default

        self.stats.hits += 1
        return value

    def __contains__(self, key: Hashable) -> bool:
        entry = self._data.get(key, _MISSING)
        if entry is _MISSING:
            return False
        return self._clock() - entry[0] <= self.ttl

    def set(self, key: Hashable, value: Any) -> None:
        if key in self._data:
            del self._data[key]
        self._data[key] = (self._clock(), value)
        self._enforce_max_size()

    def delete(self, key: Hashable) -> None:
        self._data.pop(key, None)

    def delete_where(self, predicate: Callable[[Hashable], bool]) -> int:
        keys = [k for k in self._data if predicate(k)]
        for key in keys:
            del self._data[key]
        return len(keys)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)

    def _enforce_max_size(self) -> None:
        while len(self._data) > self.max_size:
            self._data.popitem(last=False)
            self.stats.evictions += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "size": len(self._data),
            "max_size": self.max_size,
            "ttl": self.ttl,
            "hits": self.stats.hits,
            "misses": self.stats.misses,
            "evictions": self.stats.evictions,
            "hit_rate": round(self.stats.hit_rate, 2),
        }


PathLike = Union[str, Path]


class DuplicateCache:
    """Conjunto de caches usado pelo motor de deduplicação."""

    def __init__(self, cfg: Config, clock: Callable[[], float] = time.monotonic):
        self.files = TTLCache("files", cfg.FILE_CACHE_TTL, cfg.FILE_CACHE_MAX_SIZE, clock)
        self.hashes = TTLCache("hashes", cfg.HASH_CACHE_TTL, cfg.HASH_CACHE_MAX_SIZE, clock)
        self.xml_data = TTLCache(
            "xml_data", cfg.XML_DATA_CACHE_TTL, cfg.XML_DATA_CACHE_MAX_SIZE, clock
        )
        self.verdicts = TTLCache(
            "verdicts", cfg.VERDICT_CACHE_TTL, cfg.VERDICT_CACHE_MAX_SIZE, clock
        )

    @staticmethod
    def verdict_key(kind: str, artifact: PathLike, target_dir: PathLike) -> str:
        return f"{kind}-{Path(artifact)}-{Path(target_dir)}"

    def get_verdict(self, kind: str, artifact: PathLike, target_dir: PathLike) -> Any:
        return self.verdicts.get(self.verdict_key(kind, artifact, target_dir), _MISSING)

    def set_verdict(
        self, kind: str, artifact: PathLike, target_dir: PathLike, verdict: Optional[str]
    ) -> None:
        self.verdicts.set(self.verdict_key(kind, artifact, target_dir), verdict)

    def invalidate_dir(self, directory: PathLike) -> None:
        """Descarta a listagem de um diretório após mover um arquivo para ele."""
        self.files.delete(str(Path(directory)))

    def invalidate_file(self, path: PathLike) -> None:
        key = str(Path(path))
        self.hashes.delete(key)
        self.xml_data.delete(key)

    def clear(self) -> None:
        for cache in (self.files, self.hashes, self.xml_data, self.verdicts):
            cache.clear()
        logger.debug("[CACHE] Todos os caches limpos")

    def stats(self) -> Dict[str, Dict[str, Any]]:
        return {
            cache.name: cache.to_dict()
            for cache in (self.files, self.hashes, self.xml_data, self.verdicts)
        }


MISSING = _MISSING
