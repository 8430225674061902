"""
Modelos de dados do pipeline de agregação.

- Dataclasses para os registros que circulam no pipeline (Parcel,
  OwnerGroup, AggregatedCluster), que carregam geometrias shapely.
- Modelos Pydantic para o que é serializado (checkpoint do run) ou
  validado a partir de arquivo (configuração em config/aggregation.yaml).
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional, List, Dict, Any, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from shapely.geometry.base import BaseGeometry

from landholdings.errors import ConfigError

# 1 acre = 4046.86 m²
SQM_PER_ACRE = 4046.86

DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "aggregation.yaml"


# =============================================================================
# REGISTROS DO PIPELINE
# =============================================================================

@dataclass(frozen=True)
class Parcel:
    """
    Parcela imutável, carregada da tabela parcels.

    O ownership é referenciado pelo nome normalizado; a geometria está
    em EPSG:4326 (lon/lat).
    """
    id: int
    county: str
    owner_raw: Optional[str]
    owner_normalized: Optional[str]
    area_sqm: Optional[float]
    geometry: Optional[BaseGeometry]
    parcel_number: Optional[str] = None
    parcel_class: Optional[str] = None

    @property
    def acres(self) -> float:
        return (self.area_sqm or 0.0) / SQM_PER_ACRE

    @property
    def is_aggregatable(self) -> bool:
        """Parcelas sem proprietário ou sem geometria ficam fora da agregação."""
        return bool(self.owner_normalized) and self.geometry is not None


@dataclass
class OwnerStats:
    """Proprietário normalizado com número de parcelas e área total."""
    name: str
    parcel_count: int
    total_acres: float
    sample_original: Optional[str] = None


@dataclass
class OwnerGroupMember:
    name: str
    parcel_count: int
    total_acres: float


@dataclass
class OwnerGroup:
    """
    Grupo de variantes de nome que provavelmente são o mesmo proprietário.

    O canonical_name é o próprio owner que originou o grupo (o de maior
    número de parcelas no momento do processamento). Grupos com
    manual_override=True foram revisados por uma pessoa e não são
    sobrescritos por novas execuções do grouper.
    """
    canonical_name: str
    members: List[OwnerGroupMember] = field(default_factory=list)
    confidence: float = 0.0
    match_type: str = ""
    manual_override: bool = False

    @property
    def variants(self) -> List[str]:
        return [m.name for m in self.members]

    @property
    def total_parcels(self) -> int:
        return sum(m.parcel_count for m in self.members)

    @property
    def total_acres(self) -> float:
        return sum(m.total_acres for m in self.members)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'canonical_name': self.canonical_name,
            'members': [
                {'name': m.name, 'parcel_count': m.parcel_count, 'total_acres': m.total_acres}
                for m in self.members
            ],
            'confidence': self.confidence,
            'match_type': self.match_type,
            'manual_override': self.manual_override,
        }


@dataclass
class AggregatedCluster:
    """
    Conjunto máximo de parcelas adjacentes de um mesmo proprietário,
    com a geometria unida (sempre MultiPolygon).
    """
    county: str
    owner: str
    parcel_ids: Tuple[int, ...]
    total_acres: float
    geometry: BaseGeometry
    created_at: datetime = field(default_factory=datetime.now)
    id: Optional[int] = None

    @property
    def parcel_count(self) -> int:
        return len(self.parcel_ids)


# =============================================================================
# CHECKPOINT
# =============================================================================

class RunMode(str, Enum):
    FROM_SCRATCH = "from_scratch"
    RESUME = "resume"


class CheckpointPhase(str, Enum):
    TRUNCATING = "truncating"
    RUNNING = "running"


class ProgressCheckpoint(BaseModel):
    """
    Estado persistido de um run de agregação.

    É a única fonte de verdade para retomar um run que caiu: contém os
    condados já commitados e os contadores acumulados.
    """

    model_config = ConfigDict(use_enum_values=False)

    run_name: str = "statewide"
    mode: RunMode = RunMode.RESUME
    phase: CheckpointPhase = CheckpointPhase.RUNNING
    completed_counties: List[str] = Field(default_factory=list)
    failed_counties: Dict[str, str] = Field(default_factory=dict)
    total_clusters: int = 0
    total_parcels: int = 0
    started_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)

    def mark_committed(self, county: str, clusters: int, parcels: int) -> None:
        if county not in self.completed_counties:
            self.completed_counties.append(county)
        self.failed_counties.pop(county, None)
        self.total_clusters += clusters
        self.total_parcels += parcels
        self.updated_at = datetime.now()


# =============================================================================
# CONFIGURAÇÃO (config/aggregation.yaml)
# =============================================================================

class TileSettings(BaseModel):
    model_config = ConfigDict(extra="forbid")

    zoom_threshold: int = 14
    cache_ttl_seconds: float = 3600.0
    sweep_interval_seconds: Optional[float] = 300.0
    extent: int = 4096
    buffer: int = 256
    max_features: int = 20000
    max_zoom: int = 22

    @field_validator('zoom_threshold', 'max_zoom')
    @classmethod
    def validate_zoom(cls, v):
        if not (0 <= v <= 24):
            raise ValueError('Zoom deve estar entre 0 e 24')
        return v

    @field_validator('cache_ttl_seconds')
    @classmethod
    def validate_ttl(cls, v):
        if v <= 0:
            raise ValueError('TTL do cache deve ser positivo')
        return v


class AggregationSettings(BaseModel):
    """Configuração do pipeline (carregada de aggregation.yaml)."""

    model_config = ConfigDict(extra="forbid")

    excluded_counties: List[str] = Field(default_factory=lambda: ["HARRISON"])
    adjacency_tolerance: float = 0.0001  # graus (~11 m em Iowa)
    owner_workers: int = 1
    county_workers: int = 1
    eta_window: int = 5
    stop_on_county_error: bool = True
    use_owner_groups: bool = False
    owner_group_min_confidence: float = 0.95
    max_edit_distance: int = 6
    tiles: TileSettings = Field(default_factory=TileSettings)

    @field_validator('excluded_counties')
    @classmethod
    def upper_counties(cls, v):
        return [c.strip().upper() for c in v if c and c.strip()]

    @field_validator('adjacency_tolerance')
    @classmethod
    def validate_tolerance(cls, v):
        if v < 0:
            raise ValueError('Tolerância de adjacência não pode ser negativa')
        return v

    @field_validator('owner_workers', 'county_workers', 'eta_window', 'max_edit_distance')
    @classmethod
    def validate_positive(cls, v):
        if v < 1:
            raise ValueError('Valor deve ser >= 1')
        return v

    def is_excluded(self, county: str) -> bool:
        return county.upper() in self.excluded_counties


def load_settings(config_path: Optional[str] = None) -> AggregationSettings:
    """Carrega configuração do pipeline. Sem arquivo, usa os defaults."""
    config_file = Path(config_path) if config_path else DEFAULT_CONFIG_PATH

    if not config_file.exists():
        if config_path:
            raise ConfigError(f"Config não encontrado: {config_path}")
        return AggregationSettings()

    with open(config_file, 'r', encoding='utf-8') as f:
        config_dict = yaml.safe_load(f) or {}

    try:
        return AggregationSettings(**config_dict)
    except ValidationError as e:
        raise ConfigError(f"Config inválido em {config_file}: {e}") from e
