"""
Aggregation Runner
==================

Orquestrador do run de agregação estadual (condado por condado).

FLUXO:
------
1. Resolve o modo:
   - from_scratch: descarta o checkpoint, grava checkpoint na fase
     TRUNCATING, trunca parcel_aggregated, passa para RUNNING
   - resume: carrega o checkpoint e pula os condados já commitados.
     Checkpoint parado em TRUNCATING não pode ser retomado
     (ResumeNotAllowedError: rode de novo com from_scratch)
2. Para cada condado pendente (ordem alfabética, sem os excluídos):
   a. AdjacencyClusterer calcula os clusters
   b. Store substitui os clusters do condado (DELETE + INSERT, uma transação)
   c. Checkpoint atualizado
3. Completo: checkpoint removido

ESTADOS:
--------
NOT_STARTED → TRUNCATING (só from_scratch) → RUNNING(c) → COMMITTING(c)
→ RUNNING(c+1) ... → COMPLETED | FAILED | CANCELLED

ROBUSTEZ:
---------
- Banco fora do ar (StoreUnavailableError) aborta o run; o checkpoint
  mantém o último condado commitado
- Erro de um condado: registrado em failed_counties; com
  stop_on_county_error o run para ali
- Cancelamento cooperativo (threading.Event), verificado entre condados
- Run de um único condado (county=...) nunca trunca nem mexe no checkpoint
"""
import threading
import time
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from landholdings.aggregation.adjacency import AdjacencyClusterer
from landholdings.aggregation.checkpoint import CheckpointStore
from landholdings.aggregation.store import AggregationStore
from landholdings.errors import LandholdingsError, ResumeNotAllowedError, StoreUnavailableError
from landholdings.models import (
    AggregationSettings,
    CheckpointPhase,
    ProgressCheckpoint,
    RunMode,
)
from landholdings.owners.grouper import OwnerGroupIndex


class RunState(str, Enum):
    NOT_STARTED = "not_started"
    TRUNCATING = "truncating"
    RUNNING = "running"
    COMMITTING = "committing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATES = {RunState.TRUNCATING, RunState.RUNNING, RunState.COMMITTING}


@dataclass
class CountyReport:
    county: str
    clusters: int = 0
    parcels: int = 0
    skipped_components: int = 0
    seconds: float = 0.0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RunReport:
    mode: RunMode
    state: RunState = RunState.NOT_STARTED
    county_scope: Optional[str] = None
    counties: List[CountyReport] = field(default_factory=list)
    already_completed: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None
    eta_seconds: Optional[float] = None  # tempo estimado para os condados restantes

    @property
    def total_clusters(self) -> int:
        return sum(c.clusters for c in self.counties if c.ok)

    @property
    def total_parcels(self) -> int:
        return sum(c.parcels for c in self.counties if c.ok)

    @property
    def failed_counties(self) -> Dict[str, str]:
        return {c.county: c.error for c in self.counties if not c.ok}

    @property
    def elapsed_seconds(self) -> float:
        end = self.finished_at or datetime.now()
        return (end - self.started_at).total_seconds()

    @property
    def succeeded(self) -> bool:
        return self.state == RunState.COMPLETED


class AggregationRunner:
    """
    Executa o run de agregação com checkpoint por condado.

    Coordena:
    - Lista de condados (store)
    - Clustering por condado (AdjacencyClusterer)
    - Commit dos clusters e do checkpoint
    - Progresso / ETA para polling (progress())
    """

    def __init__(
        self,
        store: AggregationStore,
        checkpoints: CheckpointStore,
        settings: Optional[AggregationSettings] = None,
        clusterer: Optional[AdjacencyClusterer] = None,
        run_name: str = "statewide",
    ):
        """
        Args:
            store: Store de parcelas e clusters
            checkpoints: Onde o progresso do run é gravado
            settings: Configuração do pipeline (default: AggregationSettings())
            clusterer: Clusterer pronto; se None, é montado a partir das settings
            run_name: Chave do checkpoint
        """
        self.store = store
        self.checkpoints = checkpoints
        self.settings = settings or AggregationSettings()
        self.clusterer = clusterer
        self.run_name = run_name

        self._state_lock = threading.Lock()
        self._checkpoint_lock = threading.Lock()
        self._stop = threading.Event()
        self._durations: deque = deque(maxlen=self.settings.eta_window)

        self._state = RunState.NOT_STARTED
        self._mode: Optional[RunMode] = None
        self._current: List[str] = []
        self._total = 0
        self._done = 0
        self._failed: Dict[str, str] = {}
        self._clusters = 0
        self._parcels = 0
        self._started: Optional[float] = None

    # ========================================================================
    # PROGRESSO
    # ========================================================================

    @property
    def state(self) -> RunState:
        with self._state_lock:
            return self._state

    @property
    def is_running(self) -> bool:
        return self.state in ACTIVE_STATES

    def _set_state(self, state: RunState) -> None:
        with self._state_lock:
            self._state = state

    def _eta_seconds(self) -> Optional[float]:
        if not self._durations:
            return None
        remaining = max(self._total - self._done - len(self._failed), 0)
        return sum(self._durations) / len(self._durations) * remaining

    def _report_eta(self) -> Optional[float]:
        with self._state_lock:
            return self._eta_seconds()

    def progress(self) -> Dict[str, Any]:
        """Snapshot do progresso (seguro para chamar de outra thread)."""
        with self._state_lock:
            elapsed = time.monotonic() - self._started if self._started else 0.0
            return {
                'state': self._state.value,
                'mode': self._mode.value if self._mode else None,
                'current_counties': list(self._current),
                'counties_total': self._total,
                'counties_done': self._done,
                'counties_failed': dict(self._failed),
                'clusters': self._clusters,
                'parcels': self._parcels,
                'elapsed_seconds': round(elapsed, 1),
                'eta_seconds': self._eta_seconds(),
            }

    # ========================================================================
    # RUN
    # ========================================================================

    def _build_clusterer(self) -> AdjacencyClusterer:
        if self.clusterer is not None:
            return self.clusterer

        owner_index = None
        if self.settings.use_owner_groups:
            owner_index = OwnerGroupIndex(
                self.store.load_owner_groups(),
                min_confidence=self.settings.owner_group_min_confidence,
            )
            logger.info(f"🔗 Grouping de proprietários ativo: {len(owner_index)} variantes mapeadas")

        return AdjacencyClusterer(
            self.store,
            tolerance=self.settings.adjacency_tolerance,
            owner_workers=self.settings.owner_workers,
            owner_index=owner_index,
        )

    def _reset(self, mode: RunMode) -> None:
        with self._state_lock:
            self._state = RunState.NOT_STARTED
            self._mode = mode
            self._current = []
            self._total = 0
            self._done = 0
            self._failed = {}
            self._clusters = 0
            self._parcels = 0
            self._started = time.monotonic()
        self._durations.clear()
        self._stop.clear()

    def run(
        self,
        mode: Union[RunMode, str] = RunMode.RESUME,
        county: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> RunReport:
        """
        Executa o run.

        Args:
            mode: from_scratch ou resume
            county: Reagrega só este condado (sem truncate, sem checkpoint)
            cancel_event: Sinal de cancelamento, verificado entre condados

        Returns:
            RunReport com o resultado de cada condado processado

        Raises:
            ResumeNotAllowedError: checkpoint parado durante o truncate
            StoreUnavailableError: banco indisponível
        """
        mode = RunMode(mode)

        if self.is_running:
            raise LandholdingsError("Já existe um run de agregação em andamento")
        if county and self.settings.is_excluded(county):
            raise LandholdingsError(f"Condado {county} está excluído da agregação")

        self._reset(mode)
        report = RunReport(mode=mode, county_scope=county)

        logger.info("=" * 70)
        logger.info("AGGREGATION RUNNER - Iniciado")
        logger.info("=" * 70)
        logger.info(f"Modo: {mode.value}" + (f" | condado: {county}" if county else ""))
        logger.info(f"Tolerância de adjacência: {self.settings.adjacency_tolerance}°")
        logger.info(f"Workers: {self.settings.county_workers} condado(s) / {self.settings.owner_workers} owner(s)")
        logger.info("=" * 70)

        try:
            checkpoint = self._prepare(mode, county, report)
            if county:
                pending = [county]
            else:
                pending = [
                    c for c in self.store.list_counties(self.settings.excluded_counties)
                    if c not in report.already_completed
                ]

            with self._state_lock:
                self._total = len(pending)

            if report.already_completed:
                logger.info(f"⏭️ {len(report.already_completed)} condados já concluídos (checkpoint)")
            logger.info(f"📊 Condados a processar: {len(pending)}")

            clusterer = self._build_clusterer()
            report.counties = self._process_all(pending, clusterer, checkpoint, cancel_event)
            report.eta_seconds = self._report_eta()

            if cancel_event is not None and cancel_event.is_set():
                final = RunState.CANCELLED
            elif report.failed_counties:
                final = RunState.FAILED
            else:
                final = RunState.COMPLETED

            if final == RunState.COMPLETED and checkpoint is not None:
                self.checkpoints.delete(self.run_name)

        except Exception as e:
            # Qualquer falha libera o runner para um novo run
            self._set_state(RunState.FAILED)
            with self._state_lock:
                self._current = []
            report.state = RunState.FAILED
            report.eta_seconds = self._report_eta()
            report.finished_at = datetime.now()
            if isinstance(e, StoreUnavailableError):
                logger.error(f"❌ Banco indisponível - run abortado: {e}")
            else:
                logger.error(f"❌ Run abortado: {e}")
            raise

        self._set_state(final)
        report.state = final
        report.finished_at = datetime.now()
        self._log_final_report(report)
        return report

    def _prepare(
        self,
        mode: RunMode,
        county: Optional[str],
        report: RunReport,
    ) -> Optional[ProgressCheckpoint]:
        """Resolve checkpoint e truncate conforme o modo."""
        if county:
            return None

        if mode == RunMode.FROM_SCRATCH:
            self.checkpoints.delete(self.run_name)
            checkpoint = ProgressCheckpoint(
                run_name=self.run_name,
                mode=mode,
                phase=CheckpointPhase.TRUNCATING,
            )
            self.checkpoints.save(checkpoint)

            self._set_state(RunState.TRUNCATING)
            logger.info("🗑️ Truncando parcel_aggregated...")
            self.store.truncate_clusters()

            checkpoint.phase = CheckpointPhase.RUNNING
            checkpoint.updated_at = datetime.now()
            self.checkpoints.save(checkpoint)
            return checkpoint

        checkpoint = self.checkpoints.load(self.run_name)
        if checkpoint is None:
            logger.info("Nenhum checkpoint encontrado - processando todos os condados (sem truncate)")
            checkpoint = ProgressCheckpoint(run_name=self.run_name, mode=mode)
            self.checkpoints.save(checkpoint)
            return checkpoint

        if checkpoint.phase == CheckpointPhase.TRUNCATING:
            raise ResumeNotAllowedError(
                "Run anterior parou durante o truncate; reinicie com --mode from-scratch"
            )

        report.already_completed = list(checkpoint.completed_counties)
        with self._state_lock:
            self._clusters = checkpoint.total_clusters
            self._parcels = checkpoint.total_parcels
        logger.info(
            f"♻️ Retomando run iniciado em {checkpoint.started_at:%Y-%m-%d %H:%M} "
            f"({len(checkpoint.completed_counties)} condados concluídos)"
        )
        return checkpoint

    def _process_all(
        self,
        pending: List[str],
        clusterer: AdjacencyClusterer,
        checkpoint: Optional[ProgressCheckpoint],
        cancel_event: Optional[threading.Event],
    ) -> List[CountyReport]:
        def guarded(county: str) -> Optional[CountyReport]:
            if self._stop.is_set() or (cancel_event is not None and cancel_event.is_set()):
                return None
            return self._process_county(county, clusterer, checkpoint)

        if self.settings.county_workers > 1 and len(pending) > 1:
            with ThreadPoolExecutor(max_workers=self.settings.county_workers) as executor:
                results = list(executor.map(guarded, pending))
        else:
            results = []
            for county in pending:
                result = guarded(county)
                if result is None:
                    break
                results.append(result)

        if cancel_event is not None and cancel_event.is_set():
            logger.warning("⏹️ Run cancelado - checkpoint preservado")

        return [r for r in results if r is not None]

    def _process_county(
        self,
        county: str,
        clusterer: AdjacencyClusterer,
        checkpoint: Optional[ProgressCheckpoint],
    ) -> CountyReport:
        started = time.monotonic()
        report = CountyReport(county=county)

        with self._state_lock:
            self._state = RunState.RUNNING
            self._current.append(county)

        try:
            result = clusterer.cluster_county(county)

            self._set_state(RunState.COMMITTING)
            self.store.replace_county_clusters(county, result.clusters)

            report.clusters = len(result.clusters)
            report.parcels = result.parcels_clustered
            report.skipped_components = len(result.skipped_components)

            if checkpoint is not None:
                with self._checkpoint_lock:
                    checkpoint.mark_committed(county, report.clusters, report.parcels)
                    self.checkpoints.save(checkpoint)

        except StoreUnavailableError:
            self._stop.set()
            raise

        except Exception as e:
            report.error = str(e) or e.__class__.__name__
            logger.error(f"❌ Erro ao processar {county}: {report.error}")

            if checkpoint is not None:
                with self._checkpoint_lock:
                    checkpoint.failed_counties[county] = report.error
                    checkpoint.updated_at = datetime.now()
                    self.checkpoints.save(checkpoint)

            if self.settings.stop_on_county_error:
                self._stop.set()

        finally:
            report.seconds = time.monotonic() - started

        with self._state_lock:
            self._current.remove(county)
            if report.ok:
                self._done += 1
                self._clusters += report.clusters
                self._parcels += report.parcels
                self._durations.append(report.seconds)
            else:
                self._failed[county] = report.error
            self._state = RunState.RUNNING
            position = self._done + len(self._failed)
            total = self._total
            eta = self._eta_seconds()

        if report.ok:
            eta_text = f" | ETA {eta / 60:.1f} min" if eta else ""
            logger.info(
                f"✅ [{position}/{total}] {county}: {report.clusters:,} clusters, "
                f"{report.parcels:,} parcelas ({report.seconds:.1f}s){eta_text}"
            )
        return report

    def _log_final_report(self, report: RunReport) -> None:
        logger.info("")
        logger.info("=" * 70)
        logger.info("RELATÓRIO FINAL - AGREGAÇÃO")
        logger.info("=" * 70)
        logger.info(f"Estado: {report.state.value}")
        logger.info(f"Condados processados: {len(report.counties)}")
        logger.info(f"Clusters criados: {report.total_clusters:,}")
        logger.info(f"Parcelas agregadas: {report.total_parcels:,}")
        skipped = sum(c.skipped_components for c in report.counties)
        if skipped:
            logger.warning(f"Componentes ignorados (união falhou): {skipped}")
        for county, error in report.failed_counties.items():
            logger.error(f"Falhou: {county} - {error}")
        logger.info(f"Duração: {report.elapsed_seconds:.1f}s ({report.elapsed_seconds / 60:.1f} minutos)")
        logger.info("=" * 70)
