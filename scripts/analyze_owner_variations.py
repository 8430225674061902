"""
Análise de Variações de Nome de Proprietário
============================================

Roda o fuzzy grouper sobre os proprietários (estado inteiro ou um
condado) e mostra quantos nomes seriam fundidos.

O resultado é advisory: use --export para revisar em planilha e --save
para gravar os grupos em owner_groups (grupos com manual_override são
preservados). O run de agregação só aplica os grupos quando
use_owner_groups está ativo no aggregation.yaml.

EXEMPLOS:
---------
python scripts/analyze_owner_variations.py --county POLK
python scripts/analyze_owner_variations.py --export output/owner_groups.csv --save
"""

import sys
import argparse
from pathlib import Path

from loguru import logger

# Adicionar raiz do projeto ao path
sys.path.insert(0, str(Path(__file__).parent.parent))

from landholdings.aggregation.store import PostgisAggregationStore
from landholdings.database import test_connection
from landholdings.models import load_settings
from landholdings.owners.grouper import (
    OwnerGrouper,
    aggregate_owner_stats,
    groups_to_dataframe,
    summarize_groups,
)

TOP_CANDIDATES = 30


def setup_logging():
    """Configura logging para o script."""
    logger.remove()
    logger.add(
        sys.stderr,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        level="INFO",
    )
    logger.add(
        "logs/owner_variations_{time:YYYY-MM-DD}.log",
        format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {message}",
        level="DEBUG",
        rotation="1 day",
    )


def print_results(owner_count, groups):
    summary = summarize_groups(owner_count, groups)

    print()
    print("=" * 70)
    print("📈 RESULTADOS")
    print()
    print(f"Proprietários únicos (match exato): {summary.unique_owners:,}")
    print(f"Grupos de variantes encontrados:    {summary.groups:,}")
    print(f"Proprietários que seriam fundidos:  {summary.merged_owners:,}")
    print(f"Proprietários únicos após fusão:    {summary.owners_after_merge:,}")
    print(f"Redução:                            {summary.reduction_pct:.1f}%")

    print()
    print("=" * 70)
    print(f"🏆 TOP {TOP_CANDIDATES} CANDIDATOS A FUSÃO")
    print()
    ranked = sorted(groups, key=lambda g: g.total_parcels, reverse=True)
    for i, group in enumerate(ranked[:TOP_CANDIDATES], 1):
        print(f"{i}. {group.canonical_name} (confiança: {group.confidence * 100:.0f}%)")
        print(f"   Tipo: {group.match_type}")
        print(f"   Parcelas: {group.total_parcels:,}")
        print(f"   Variantes ({len(group.members)}):")
        for member in group.members:
            print(f"      - \"{member.name}\" ({member.parcel_count} parcelas, {member.total_acres:,.0f} acres)")
        print()

    print("=" * 70)
    print("📊 FAIXAS DE CONFIANÇA")
    print()
    print(f"Alta (>=95%):    {summary.high_confidence:,} grupos - fusão automática segura")
    print(f"Média (85-95%):  {summary.medium_confidence:,} grupos - revisão recomendada")
    print(f"Baixa (<85%):    {summary.low_confidence:,} grupos - revisão manual obrigatória")
    print("=" * 70)


def main():
    parser = argparse.ArgumentParser(description="Análise de variações de nome de proprietário")
    parser.add_argument('--county', default=None, help='Restringir a um condado')
    parser.add_argument('--export', default=None, help='Exportar grupos para CSV')
    parser.add_argument('--save', action='store_true', help='Gravar grupos em owner_groups')
    parser.add_argument('--config', default=None, help='Caminho do aggregation.yaml')
    args = parser.parse_args()

    setup_logging()
    settings = load_settings(args.config)

    if not test_connection():
        logger.error("❌ Sem conexão com o banco. Verifique o .env")
        sys.exit(1)

    county = args.county.upper() if args.county else None
    store = PostgisAggregationStore()

    print("📊 Análise de Variações de Nome de Proprietário")
    print("=" * 70)
    logger.info(f"Carregando proprietários{' de ' + county if county else ''}...")

    owners = aggregate_owner_stats(store.owner_stats(county))
    logger.info(f"✅ {len(owners):,} proprietários únicos")

    grouper = OwnerGrouper(max_distance=settings.max_edit_distance)
    groups = grouper.group(owners)
    logger.info(f"🔍 {grouper.stats['comparisons']:,} comparações, {len(groups):,} grupos")

    print_results(len(owners), groups)

    if args.export:
        export_path = Path(args.export)
        export_path.parent.mkdir(parents=True, exist_ok=True)
        groups_to_dataframe(groups).to_csv(export_path, index=False)
        logger.success(f"💾 Grupos exportados para {export_path}")

    if args.save:
        saved = store.save_owner_groups(groups)
        logger.success(f"💾 {saved:,} grupos gravados em owner_groups")


if __name__ == "__main__":
    main()
