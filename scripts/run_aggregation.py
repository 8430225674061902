"""
Script de Execução - Agregação de Propriedades
===============================================

Agrupa as parcelas adjacentes de cada proprietário em clusters
(tabela parcel_aggregated), condado por condado, com checkpoint.

MODOS:
------
--mode from-scratch
    Descarta o checkpoint, trunca parcel_aggregated e refaz todos os condados

--mode resume (default)
    Continua de onde o último run parou (pula condados já commitados).
    Sem checkpoint, processa todos os condados sem truncar.

--county NOME
    Reagrega só um condado (não trunca, não mexe no checkpoint)

EXEMPLOS:
---------
python scripts/run_aggregation.py --mode from-scratch
python scripts/run_aggregation.py --county POLK --normalize

Exit code 1 se algum condado falhou ou o run foi interrompido.
"""

import sys
import argparse
from pathlib import Path
from datetime import datetime

from loguru import logger

# Adicionar raiz do projeto ao path
sys.path.insert(0, str(Path(__file__).parent.parent))

from landholdings.aggregation.checkpoint import PostgisCheckpointStore
from landholdings.aggregation.runner import AggregationRunner, RunReport
from landholdings.aggregation.store import PostgisAggregationStore
from landholdings.database import test_connection
from landholdings.errors import LandholdingsError
from landholdings.models import RunMode, load_settings


def setup_logging():
    """Configura logging para console e arquivo."""
    log_dir = Path(__file__).parent.parent / "logs"
    log_dir.mkdir(exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"aggregation_{timestamp}.log"

    logger.remove()
    logger.add(sys.stderr, level="INFO", colorize=True)
    logger.add(
        log_file,
        level="DEBUG",
        rotation="100 MB",
        retention="30 days"
    )

    return log_file


def print_report(report: RunReport):
    """Imprime estatísticas por condado e totais."""
    print()
    print("=" * 70)
    print(f"{'CONDADO':<20} {'CLUSTERS':>10} {'PARCELAS':>10} {'IGNORADOS':>10} {'TEMPO':>8}")
    print("-" * 70)
    for county in report.counties:
        if county.ok:
            print(
                f"{county.county:<20} {county.clusters:>10,} {county.parcels:>10,} "
                f"{county.skipped_components:>10} {county.seconds:>7.1f}s"
            )
        else:
            print(f"{county.county:<20} {'ERRO':>10}  {county.error}")
    print("-" * 70)
    print(f"Estado:            {report.state.value}")
    if report.already_completed:
        print(f"Já concluídos:     {len(report.already_completed)} condados (checkpoint)")
    print(f"Condados:          {len(report.counties)}")
    print(f"Clusters criados:  {report.total_clusters:,}")
    print(f"Parcelas:          {report.total_parcels:,}")
    print(f"Falhas:            {len(report.failed_counties)}")
    print(f"Duração:           {report.elapsed_seconds / 60:.1f} minutos")
    if report.eta_seconds:
        print(f"Restante estimado: {report.eta_seconds / 60:.1f} minutos")
    print("=" * 70)


def print_summary(store: PostgisAggregationStore):
    """Estatísticas da tabela parcel_aggregated."""
    summary = store.cluster_summary(top=10)
    print()
    print("📊 parcel_aggregated:")
    print(f"   Clusters: {summary['total_clusters']:,}")
    print(f"   Parcelas: {summary['total_parcels']:,}")
    print(f"   Média de parcelas por cluster: {summary['avg_parcels_per_cluster']}")
    print(f"   Maior cluster: {summary['max_parcels_in_cluster']} parcelas")
    print()
    print("🏆 Maiores clusters:")
    for i, item in enumerate(summary['largest'], 1):
        print(
            f"   {i:2}. {item['owner'][:40]:<40} {item['county']:<12} "
            f"{item['parcel_count']:>4} parcelas  {item['total_acres']:>10,.1f} ac"
        )


def main():
    parser = argparse.ArgumentParser(description="Agregação de propriedades por proprietário")
    parser.add_argument('--mode', choices=['from-scratch', 'resume'], default='resume',
                        help='from-scratch trunca e refaz tudo; resume continua do checkpoint')
    parser.add_argument('--county', default=None, help='Reagregar apenas este condado')
    parser.add_argument('--config', default=None, help='Caminho do aggregation.yaml')
    parser.add_argument('--normalize', action='store_true',
                        help='Recalcular deed_holder_normalized antes de agregar')
    parser.add_argument('--summary', action='store_true', help='Mostrar os maiores clusters ao final')
    args = parser.parse_args()

    log_file = setup_logging()
    logger.info(f"Log file: {log_file}")

    try:
        settings = load_settings(args.config)
    except LandholdingsError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)

    if not test_connection():
        logger.error("❌ Sem conexão com o banco. Verifique o .env")
        sys.exit(1)

    county = args.county.upper() if args.county else None
    store = PostgisAggregationStore()

    if args.normalize:
        logger.info("🔤 Normalizando nomes de proprietários...")
        store.normalize_owner_names(county)

    runner = AggregationRunner(store, PostgisCheckpointStore(), settings=settings)

    try:
        report = runner.run(RunMode(args.mode.replace('-', '_')), county=county)
    except LandholdingsError as e:
        logger.error(f"❌ {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.warning("⏹️ Interrompido pelo usuário - use --mode resume para continuar")
        sys.exit(1)

    print_report(report)
    if args.summary:
        print_summary(store)

    sys.exit(0 if report.succeeded else 1)


if __name__ == "__main__":
    main()
