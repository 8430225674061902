"""
Fuzzy Owner Grouper
===================

Reduz variantes quase duplicadas de um mesmo proprietário
("SMITH, JOHN" / "JOHN A SMITH" / "SMITH FAMILY TRUST") a um único grupo,
para não fragmentar as terras de um dono real em vários clusters.

ALGORITMO:
----------
1. Normaliza cada nome bruto distinto e agrega número de parcelas e
   área total por chave normalizada
2. Blocking por sobrenome (última palavra): só compara dentro do bloco,
   O(n²) vira O(n · tamanho_do_bloco)
3. Processa por número de parcelas decrescente; cada owner ainda não
   processado é comparado com os seguintes do bloco usando Levenshtein
   limitado (RapidFuzz com score_cutoff: aborta acima do teto)
4. Faixas de confiança:
   - distância <= 2 → 0.98 (typo)
   - distância <= 4 → 0.92 (similar)
   - distância <= 6 + substring → 0.88
   - distância <= 6 → 0.82
5. Guloso: um nome absorvido em um grupo é marcado como processado e não
   participa de outros grupos. A ordem de processamento decide empates.

O resultado é advisory: é revisado separadamente e, opcionalmente,
aplicado pelo AdjacencyClusterer (ver OwnerGroupIndex).
"""
from collections import Counter, defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

import pandas as pd
from loguru import logger
from rapidfuzz.distance import Levenshtein

from landholdings.models import OwnerGroup, OwnerGroupMember, OwnerStats
from landholdings.owners.normalizer import normalize_owner_name, surname_key


class MatchType(str, Enum):
    TYPO = "levenshtein<=2 (typo/minor variation)"
    SIMILAR = "levenshtein<=4 (similar)"
    SUBSTRING = "levenshtein<=6 + substring"
    WEAK = "levenshtein<=6"


MATCH_CONFIDENCE = {
    MatchType.TYPO: 0.98,
    MatchType.SIMILAR: 0.92,
    MatchType.SUBSTRING: 0.88,
    MatchType.WEAK: 0.82,
}


def bounded_distance(a: str, b: str, ceiling: int) -> int:
    """Levenshtein com teto: retorna ceiling + 1 assim que passar do teto."""
    if abs(len(a) - len(b)) > ceiling:
        return ceiling + 1
    return Levenshtein.distance(a, b, score_cutoff=ceiling)


def classify_match(a: str, b: str, distance: int, ceiling: int = 6) -> Optional[MatchType]:
    """Classifica um par pela distância; None quando não é match."""
    if distance > ceiling:
        return None
    if distance <= 2:
        return MatchType.TYPO
    if distance <= 4:
        return MatchType.SIMILAR
    if a in b or b in a:
        return MatchType.SUBSTRING
    return MatchType.WEAK


def aggregate_owner_stats(rows: Iterable[Tuple[Optional[str], int, float]]) -> List[OwnerStats]:
    """
    Agrega (nome_bruto, parcelas, acres) por nome normalizado.

    Nomes que normalizam para vazio são descartados. O resultado vem
    ordenado por parcelas decrescente (empate: nome), que é a ordem de
    processamento do grouper.
    """
    df = pd.DataFrame(list(rows), columns=['raw', 'parcel_count', 'total_acres'])
    if df.empty:
        return []

    df['name'] = df['raw'].map(normalize_owner_name)
    df = df[df['name'].notna()]
    if df.empty:
        return []

    grouped = (
        df.groupby('name', sort=False)
        .agg(
            parcel_count=('parcel_count', 'sum'),
            total_acres=('total_acres', 'sum'),
            sample_original=('raw', 'max'),
        )
        .reset_index()
        .sort_values(['parcel_count', 'name'], ascending=[False, True], kind='mergesort')
    )

    return [
        OwnerStats(
            name=row.name,
            parcel_count=int(row.parcel_count),
            total_acres=float(row.total_acres or 0.0),
            sample_original=row.sample_original,
        )
        for row in grouped.itertuples(index=False)
    ]


class OwnerGrouper:
    """Agrupa variantes de nome por blocking de sobrenome + Levenshtein limitado."""

    def __init__(self, max_distance: int = 6):
        """
        Args:
            max_distance: Teto da distância de edição (acima disso não é match)
        """
        self.max_distance = max_distance
        self.stats = {
            'owners': 0,
            'buckets': 0,
            'comparisons': 0,
            'groups': 0,
        }

    @staticmethod
    def sort_for_processing(owners: List[OwnerStats]) -> List[OwnerStats]:
        return sorted(owners, key=lambda o: (-o.parcel_count, o.name))

    @staticmethod
    def bucket_by_surname(owners: List[OwnerStats]) -> Dict[str, List[OwnerStats]]:
        """Blocos por sobrenome, preservando a ordem de entrada dentro de cada bloco."""
        buckets: Dict[str, List[OwnerStats]] = defaultdict(list)
        for owner in owners:
            buckets[surname_key(owner.name)].append(owner)
        return dict(buckets)

    def group(self, owners: List[OwnerStats]) -> List[OwnerGroup]:
        """
        Encontra os grupos de variantes.

        Args:
            owners: Estatísticas por nome normalizado (nomes únicos)

        Returns:
            Lista de OwnerGroup (apenas owners com pelo menos um match)
        """
        ordered = self.sort_for_processing(owners)
        buckets = self.bucket_by_surname(ordered)

        self.stats['owners'] = len(ordered)
        self.stats['buckets'] = len(buckets)
        self.stats['comparisons'] = 0

        if buckets:
            logger.info(
                f"📋 {len(ordered):,} owners em {len(buckets):,} blocos de sobrenome "
                f"(média {len(ordered) / len(buckets):.1f} por bloco)"
            )

        groups: List[OwnerGroup] = []
        processed = set()

        for surname, bucket in buckets.items():
            for i, owner in enumerate(bucket):
                if owner.name in processed:
                    continue

                matches: List[Tuple[OwnerStats, MatchType]] = []

                for other in bucket[i + 1:]:
                    if other.name in processed or other.name == owner.name:
                        continue

                    self.stats['comparisons'] += 1
                    distance = bounded_distance(owner.name, other.name, self.max_distance)
                    match_type = classify_match(owner.name, other.name, distance, self.max_distance)

                    if match_type is not None:
                        matches.append((other, match_type))

                processed.add(owner.name)

                if not matches:
                    continue

                group = self._build_group(owner, matches)
                groups.append(group)
                processed.update(group.variants)

                logger.debug(
                    f"Grupo '{group.canonical_name}': {len(group.members)} variantes "
                    f"(confiança {group.confidence:.2f})"
                )

        self.stats['groups'] = len(groups)
        return groups

    @staticmethod
    def _build_group(owner: OwnerStats, matches: List[Tuple[OwnerStats, MatchType]]) -> OwnerGroup:
        members: Dict[str, OwnerGroupMember] = {}
        for stats in [owner] + [m for m, _ in matches]:
            if stats.name not in members:
                members[stats.name] = OwnerGroupMember(
                    name=stats.name,
                    parcel_count=stats.parcel_count,
                    total_acres=stats.total_acres,
                )

        confidences = [MATCH_CONFIDENCE[t] for _, t in matches]
        predominant = Counter(t for _, t in matches).most_common(1)[0][0]

        return OwnerGroup(
            canonical_name=owner.name,
            members=list(members.values()),
            confidence=sum(confidences) / len(confidences),
            match_type=predominant.value,
        )


@dataclass
class GroupingSummary:
    unique_owners: int
    groups: int
    merged_owners: int
    owners_after_merge: int
    reduction_pct: float
    high_confidence: int
    medium_confidence: int
    low_confidence: int


def summarize_groups(owner_count: int, groups: List[OwnerGroup]) -> GroupingSummary:
    """Estatísticas do resultado (faixas: >=0.95 alta, 0.85-0.95 média, <0.85 baixa)."""
    merged = sum(len(g.members) for g in groups)
    reduction = sum(len(g.members) - 1 for g in groups)

    return GroupingSummary(
        unique_owners=owner_count,
        groups=len(groups),
        merged_owners=merged,
        owners_after_merge=owner_count - reduction,
        reduction_pct=(reduction / owner_count * 100) if owner_count else 0.0,
        high_confidence=sum(1 for g in groups if g.confidence >= 0.95),
        medium_confidence=sum(1 for g in groups if 0.85 <= g.confidence < 0.95),
        low_confidence=sum(1 for g in groups if g.confidence < 0.85),
    )


def groups_to_dataframe(groups: List[OwnerGroup]) -> pd.DataFrame:
    """Uma linha por variante, para revisão manual em planilha."""
    records = []
    for group in groups:
        for member in group.members:
            records.append({
                'canonical_name': group.canonical_name,
                'variant': member.name,
                'parcel_count': member.parcel_count,
                'total_acres': round(member.total_acres, 1),
                'group_confidence': round(group.confidence, 3),
                'match_type': group.match_type,
                'manual_override': group.manual_override,
            })
    return pd.DataFrame(
        records,
        columns=[
            'canonical_name', 'variant', 'parcel_count', 'total_acres',
            'group_confidence', 'match_type', 'manual_override',
        ],
    )


class OwnerGroupIndex:
    """
    Mapeia variante -> nome canônico para o AdjacencyClusterer.

    Só entram grupos aceitos: revisados manualmente (manual_override)
    ou com confiança >= min_confidence. Sem grupos, cada nome normalizado
    é o seu próprio grupo.
    """

    def __init__(self, groups: Iterable[OwnerGroup] = (), min_confidence: float = 0.95):
        self.min_confidence = min_confidence
        self._canonical: Dict[str, str] = {}

        # Grupos manuais primeiro: prevalecem sobre os automáticos
        ordered = sorted(groups, key=lambda g: not g.manual_override)
        for group in ordered:
            if not group.manual_override and group.confidence < min_confidence:
                continue
            for variant in group.variants:
                self._canonical.setdefault(variant, group.canonical_name)

    def __len__(self) -> int:
        return len(self._canonical)

    def canonical(self, normalized_name: str) -> str:
        return self._canonical.get(normalized_name, normalized_name)
