"""Exceções do pacote landholdings."""


class LandholdingsError(Exception):
    """Erro base do pacote."""


class StoreUnavailableError(LandholdingsError):
    """Banco de dados (ou store) indisponível. Erro de recurso: aborta a operação atual."""


class ResumeNotAllowedError(LandholdingsError):
    """
    Tentativa de retomar um run que não pode ser retomado.

    Acontece quando um run from-scratch foi interrompido durante o TRUNCATE:
    a tabela está em estado parcial e o run precisa ser reiniciado do zero.
    """


class TileGenerationError(LandholdingsError):
    """Falha total ao consultar dados para um tile."""


class InvalidTileError(LandholdingsError, ValueError):
    """Coordenadas de tile fora do intervalo válido."""


class ConfigError(LandholdingsError, ValueError):
    """Arquivo de configuração ausente ou inválido."""
