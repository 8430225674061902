"""
Módulo de conexão com PostgreSQL/PostGIS.
Carrega credenciais de variáveis de ambiente para segurança.
"""
import os
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.orm import sessionmaker, Session
from dotenv import load_dotenv
from loguru import logger

from landholdings.errors import StoreUnavailableError

# Carregar variáveis de ambiente do arquivo .env
load_dotenv()


class DatabaseConfig:
    """Configuração do banco de dados a partir de variáveis de ambiente."""

    def __init__(self):
        self.host = os.getenv("DB_HOST", "localhost")
        self.port = os.getenv("DB_PORT", "5432")
        self.database = os.getenv("DB_NAME", "landholdings")
        self.user = os.getenv("DB_USER", "postgres")
        self.password = os.getenv("DB_PASSWORD", "")

        if not self.password:
            logger.warning("DB_PASSWORD não definida no .env")

    @property
    def connection_string(self) -> str:
        """Retorna a connection string do PostgreSQL."""
        url = os.getenv("DATABASE_URL")
        if url:
            return url
        return (
            f"postgresql://{self.user}:{self.password}"
            f"@{self.host}:{self.port}/{self.database}"
        )


# Engine global (singleton pattern)
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_engine(echo: bool = False) -> Engine:
    """
    Retorna a engine SQLAlchemy (singleton).

    Args:
        echo: Se True, loga todas as queries SQL

    Returns:
        Engine do SQLAlchemy
    """
    global _engine

    if _engine is None:
        config = DatabaseConfig()
        _engine = create_engine(
            config.connection_string,
            echo=echo,
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=True,  # Verifica conexões antes de usar
        )
        logger.info(f"Engine criada: {config.host}:{config.port}/{config.database}")

    return _engine


def get_session_maker(engine: Optional[Engine] = None) -> sessionmaker:
    """
    Retorna o sessionmaker configurado.

    Args:
        engine: Engine explícita; se None usa a engine global

    Returns:
        sessionmaker do SQLAlchemy
    """
    global _SessionLocal

    if engine is not None:
        return sessionmaker(bind=engine, autocommit=False, autoflush=False)

    if _SessionLocal is None:
        _SessionLocal = sessionmaker(
            bind=get_engine(),
            autocommit=False,
            autoflush=False,
        )

    return _SessionLocal


@contextmanager
def get_db_session(engine: Optional[Engine] = None):
    """
    Context manager para sessões do banco de dados.

    Falhas de conexão são convertidas em StoreUnavailableError para que
    o chamador trate o banco fora do ar como erro de recurso.

    Uso:
        with get_db_session() as session:
            result = session.execute(text("SELECT 1"))
    """
    SessionLocal = get_session_maker(engine)
    session: Session = SessionLocal()

    try:
        yield session
        session.commit()
    except (OperationalError, InterfaceError) as e:
        session.rollback()
        logger.error(f"Banco indisponível: {e}")
        raise StoreUnavailableError(str(e)) from e
    except Exception as e:
        session.rollback()
        logger.error(f"Erro na sessão do banco: {e}")
        raise
    finally:
        session.close()


def test_connection(engine: Optional[Engine] = None) -> bool:
    """
    Testa a conexão com o banco de dados.

    Returns:
        True se conectou com sucesso, False caso contrário
    """
    try:
        with get_db_session(engine) as session:
            result = session.execute(text("SELECT version()"))
            version = result.scalar()
            logger.info(f"Conexão bem-sucedida: {version}")

            # Verifica se PostGIS está instalado
            result = session.execute(text("SELECT PostGIS_version()"))
            postgis_version = result.scalar()
            logger.info(f"PostGIS version: {postgis_version}")

            return True
    except Exception as e:
        logger.error(f"Falha ao conectar ao banco: {e}")
        return False
