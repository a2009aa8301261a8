from __future__ import annotations

"""
Unidad transaccional + serialización por clave.

Cada operación que mueve dinero corre así:
    locks (claves ordenadas) -> una transacción -> commit -> liberar locks

Capas de lock:
- threading.RLock por franja de claves (mismo proceso)
- Flask-Caching `cache.add` (lock consultivo entre procesos con cache compartido)
- SELECT ... FOR UPDATE sobre la fila Account (ver LedgerStore.lock_account)
- version_id_col + UNIQUE(account_id, seq) como última red
"""

import logging
import threading
import time
import zlib
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, TypeVar

from flask import current_app
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm.exc import StaleDataError

from settlement.errors import ConcurrencyError
from settlement.models import db

log = logging.getLogger("tx")

T = TypeVar("T")

_LOCK_PREFIX = "settlement_lock:"
_SPIN_SLEEP = 0.02

# locks del proceso repartidos en franjas fijas: la memoria no crece con las claves.
# RLock porque dos claves de la misma franja pueden tomarse en el mismo hilo.
_STRIPES = 256
_LOCAL_LOCKS: List[threading.RLock] = [threading.RLock() for _ in range(_STRIPES)]
_HELD = threading.local()

_RETRYABLE = (OperationalError, StaleDataError, IntegrityError)


# =============================================================================
# Helpers
# =============================================================================

def account_key(account_id: int) -> str:
    return f"account:{int(account_id)}"


def dialect_name() -> str:
    try:
        return str(db.session.get_bind().dialect.name)
    except Exception:
        return ""


def _cache():
    # Flask-Caching registra {Cache: backend} en app.extensions["cache"]
    caches = current_app.extensions.get("cache") or {}
    return next(iter(caches), None)


def _local_lock(key: str) -> threading.RLock:
    return _LOCAL_LOCKS[zlib.crc32(key.encode("utf-8")) % _STRIPES]


def _held_keys() -> Dict[str, int]:
    held = getattr(_HELD, "keys", None)
    if held is None:
        held = {}
        _HELD.keys = held
    return held


# =============================================================================
# Transaction
# =============================================================================

class tx:
    def __enter__(self):
        return db.session

    def __exit__(self, exc_type, exc, tb):
        if exc_type:
            db.session.rollback()
            return False
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return False


# =============================================================================
# Serialización por clave
# =============================================================================

class serialized:
    """
    Toma los locks de `keys` en orden (evita deadlocks entre cuentas).
    Reentrante dentro del mismo hilo: una clave ya tomada no se vuelve a pedir.
    """

    def __init__(self, *keys: str, timeout: Optional[float] = None) -> None:
        self.keys: List[str] = sorted({str(k) for k in keys if k})
        self.timeout = timeout
        self._acquired: List[str] = []
        self._cache_keys: List[str] = []

    def __enter__(self) -> "serialized":
        timeout = float(self.timeout if self.timeout is not None else current_app.config.get("LEDGER_LOCK_TIMEOUT", 8))
        ttl = max(30, int(timeout * 4))
        deadline = time.monotonic() + timeout
        held = _held_keys()
        cache = _cache()

        try:
            for key in self.keys:
                if held.get(key):
                    held[key] += 1
                    self._acquired.append(key)
                    continue

                remaining = max(0.0, deadline - time.monotonic())
                if not _local_lock(key).acquire(timeout=remaining):
                    raise ConcurrencyError("No se pudo obtener el lock", key=key)
                held[key] = 1
                self._acquired.append(key)

                if cache is not None:
                    ckey = _LOCK_PREFIX + key
                    while not cache.add(ckey, "1", timeout=ttl):
                        if time.monotonic() >= deadline:
                            raise ConcurrencyError("Lock ocupado por otro proceso", key=key)
                        time.sleep(_SPIN_SLEEP)
                    self._cache_keys.append(ckey)
        except BaseException:
            self._release()
            raise
        return self

    def __exit__(self, exc_type, exc, tb):
        self._release()
        return False

    def _release(self) -> None:
        held = _held_keys()
        cache = _cache() if self._cache_keys else None
        for key in reversed(self._acquired):
            count = held.get(key, 0)
            if count > 1:
                held[key] = count - 1
                continue
            held.pop(key, None)
            ckey = _LOCK_PREFIX + key
            if cache is not None and ckey in self._cache_keys:
                cache.delete(ckey)
            _local_lock(key).release()
        self._acquired = []
        self._cache_keys = []


def run_in_transaction(
    fn: Callable[[], T],
    *,
    keys: Iterable[str] = (),
    retries: Optional[int] = None,
    label: str = "unit",
) -> T:
    """
    Ejecuta `fn` como unidad atómica bajo los locks de `keys`.
    Errores transitorios (lock de DB, versión vieja, carrera de UNIQUE) se
    reintentan desde cero; agotados los intentos se levanta ConcurrencyError.
    """
    key_list: Sequence[str] = tuple(keys)
    attempts = max(1, int(retries if retries is not None else current_app.config.get("TX_RETRIES", 3)))

    for attempt in range(1, attempts + 1):
        try:
            with serialized(*key_list):
                with tx():
                    return fn()
        except _RETRYABLE as e:
            if attempt >= attempts:
                log.warning("%s: conflicto persistente tras %s intentos: %s", label, attempt, e)
                raise ConcurrencyError(f"{label}: conflicto de concurrencia") from e
            log.info("%s: reintento %s/%s (%s)", label, attempt, attempts, type(e).__name__)
            time.sleep(_SPIN_SLEEP * attempt)

    raise ConcurrencyError(f"{label}: sin intentos")  # pragma: no cover


__all__ = ["tx", "serialized", "run_in_transaction", "account_key", "dialect_name"]
