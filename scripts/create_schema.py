"""
Script para criar o schema do banco de dados.
Executa landholdings/schema.sql no PostgreSQL/PostGIS.
"""
import sys
from pathlib import Path
from loguru import logger

# Adicionar raiz do projeto ao path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from landholdings.database import get_db_session
from sqlalchemy import text

EXPECTED_TABLES = ['aggregation_checkpoints', 'owner_groups', 'parcel_aggregated', 'parcels']


def create_schema():
    """Cria o schema do banco de dados executando schema.sql."""

    logger.info("=" * 60)
    logger.info("CRIANDO SCHEMA DO BANCO DE DADOS")
    logger.info("=" * 60)

    # Testar conexão básica
    logger.info("\n1. Testando conexão com o banco de dados...")
    try:
        with get_db_session() as session:
            result = session.execute(text("SELECT version()"))
            version = result.scalar()
            logger.info(f"Conexão bem-sucedida: {version}")
    except Exception as e:
        logger.error(f"Falha na conexão: {e}")
        return False

    schema_file = project_root / "landholdings" / "schema.sql"

    if not schema_file.exists():
        logger.error(f"Arquivo schema.sql não encontrado: {schema_file}")
        return False

    logger.info(f"\n2. Lendo schema SQL de: {schema_file}")

    with open(schema_file, 'r', encoding='utf-8') as f:
        schema_sql = f.read()

    logger.info("\n3. Executando comandos SQL...")

    try:
        with get_db_session() as session:
            session.execute(text(schema_sql))

            logger.success("✓ Schema criado com sucesso!")

            result = session.execute(text("""
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = 'public'
                AND table_type = 'BASE TABLE'
                ORDER BY table_name
            """))
            tables = {row[0] for row in result}

            logger.info("\n4. Tabelas:")
            for table in EXPECTED_TABLES:
                marker = "✓" if table in tables else "✗"
                logger.info(f"   {marker} {table}")

            result = session.execute(text("""
                SELECT extname, extversion
                FROM pg_extension
                WHERE extname = 'postgis'
            """))

            postgis = result.fetchone()
            if postgis:
                logger.info(f"\n5. Extensão PostGIS: v{postgis[1]} ✓")
            else:
                logger.warning("\n5. Extensão PostGIS não encontrada!")

            logger.info("\n" + "=" * 60)
            logger.success("SCHEMA CRIADO COM SUCESSO!")
            logger.info("=" * 60)

            return all(t in tables for t in EXPECTED_TABLES)

    except Exception as e:
        logger.error(f"\n✗ Erro ao criar schema: {e}")
        return False


def main():
    """Execução principal."""

    logger.add(
        "logs/create_schema_{time}.log",
        rotation="1 day",
        level="DEBUG"
    )

    success = create_schema()

    if success:
        logger.info("\nPróximo passo: Execute 'python scripts/run_aggregation.py --mode from-scratch'")
    else:
        logger.error("\nCorrija os erros acima e tente novamente")

    return success


if __name__ == "__main__":
    success = main()
    sys.exit(0 if success else 1)
