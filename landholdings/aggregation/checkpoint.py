"""
Checkpoint do run de agregação.

O checkpoint é gravado após cada condado commitado e é o que permite
retomar (--mode resume) um run interrompido sem refazer condados.
"""
import threading
from abc import ABC, abstractmethod
from typing import Dict, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine

from landholdings.database import get_db_session
from landholdings.models import ProgressCheckpoint


class CheckpointStore(ABC):

    @abstractmethod
    def load(self, run_name: str) -> Optional[ProgressCheckpoint]:
        """Checkpoint do run, ou None se não existe."""

    @abstractmethod
    def save(self, checkpoint: ProgressCheckpoint) -> None:
        """Grava (upsert) o checkpoint."""

    @abstractmethod
    def delete(self, run_name: str) -> None:
        """Descarta o checkpoint do run."""


class PostgisCheckpointStore(CheckpointStore):
    """Checkpoint em uma linha JSONB da tabela aggregation_checkpoints."""

    def __init__(self, engine: Optional[Engine] = None):
        self.engine = engine

    def load(self, run_name: str) -> Optional[ProgressCheckpoint]:
        with get_db_session(self.engine) as session:
            row = session.execute(
                text("SELECT payload::text FROM aggregation_checkpoints WHERE run_name = :run_name"),
                {'run_name': run_name},
            ).fetchone()

        if row is None:
            return None
        return ProgressCheckpoint.model_validate_json(row[0])

    def save(self, checkpoint: ProgressCheckpoint) -> None:
        with get_db_session(self.engine) as session:
            session.execute(text("""
                INSERT INTO aggregation_checkpoints (run_name, payload, updated_at)
                VALUES (:run_name, CAST(:payload AS jsonb), NOW())
                ON CONFLICT (run_name) DO UPDATE SET
                    payload = EXCLUDED.payload,
                    updated_at = NOW()
            """), {
                'run_name': checkpoint.run_name,
                'payload': checkpoint.model_dump_json(),
            })

    def delete(self, run_name: str) -> None:
        with get_db_session(self.engine) as session:
            session.execute(
                text("DELETE FROM aggregation_checkpoints WHERE run_name = :run_name"),
                {'run_name': run_name},
            )


class InMemoryCheckpointStore(CheckpointStore):
    """Guarda cópias serializadas, como o banco faria."""

    def __init__(self):
        self._lock = threading.Lock()
        self._payloads: Dict[str, str] = {}

    def load(self, run_name: str) -> Optional[ProgressCheckpoint]:
        with self._lock:
            payload = self._payloads.get(run_name)
        if payload is None:
            return None
        return ProgressCheckpoint.model_validate_json(payload)

    def save(self, checkpoint: ProgressCheckpoint) -> None:
        with self._lock:
            self._payloads[checkpoint.run_name] = checkpoint.model_dump_json()

    def delete(self, run_name: str) -> None:
        with self._lock:
            self._payloads.pop(run_name, None)
