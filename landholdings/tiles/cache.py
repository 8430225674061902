"""
Cache de tiles em memória, com TTL.

Chave: (z, x, y, mode). Acesso protegido por lock; entradas expiradas
são descartadas na leitura e, opcionalmente, por uma thread daemon
que varre o cache periodicamente.
"""
import threading
import time
from typing import Callable, Dict, Hashable, Optional, Tuple

from loguru import logger


class TileCache:

    def __init__(
        self,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            ttl_seconds: Tempo de vida de cada entrada
            clock: Fonte de tempo (injetável para testes)
        """
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: Dict[Hashable, Tuple[float, bytes]] = {}
        self._hits = 0
        self._misses = 0
        self._sweeper: Optional[threading.Thread] = None
        self._stop_sweeper = threading.Event()

    def get(self, key: Hashable) -> Optional[bytes]:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry[0] > now:
                self._hits += 1
                return entry[1]
            if entry is not None:
                del self._entries[key]
            self._misses += 1
            return None

    def set(self, key: Hashable, value: bytes) -> None:
        expires = self._clock() + self.ttl_seconds
        with self._lock:
            self._entries[key] = (expires, value)

    def clear(self) -> int:
        """Esvazia o cache; retorna quantas entradas foram removidas."""
        with self._lock:
            removed = len(self._entries)
            self._entries.clear()
            self._hits = 0
            self._misses = 0
        logger.info(f"🧹 Cache de tiles limpo ({removed} entradas)")
        return removed

    def sweep(self) -> int:
        """Remove as entradas expiradas."""
        now = self._clock()
        with self._lock:
            expired = [k for k, (expires, _) in self._entries.items() if expires <= now]
            for key in expired:
                del self._entries[key]
        if expired:
            logger.debug(f"Cache de tiles: {len(expired)} entradas expiradas removidas")
        return len(expired)

    def stats(self) -> Dict[str, float]:
        with self._lock:
            return {
                'keys': len(self._entries),
                'hits': self._hits,
                'misses': self._misses,
                'ttl_seconds': self.ttl_seconds,
            }

    def start_sweeper(self, interval_seconds: float) -> None:
        """Inicia a thread daemon de limpeza (idempotente)."""
        if self._sweeper is not None and self._sweeper.is_alive():
            return
        self._stop_sweeper.clear()

        def loop():
            while not self._stop_sweeper.wait(interval_seconds):
                self.sweep()

        self._sweeper = threading.Thread(target=loop, name="tile-cache-sweeper", daemon=True)
        self._sweeper.start()

    def stop_sweeper(self) -> None:
        self._stop_sweeper.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=1.0)
            self._sweeper = None
