"""
Owner Name Normalizer
=====================

Canonicaliza o nome do deed holder em uma chave comparável.

Regras (nesta ordem):
1. Uppercase
2. Conectores "AND" / "&" viram espaço
3. Remove sufixos corporativos/fiduciários no FINAL da string
   (LLC, INC, TRUST, ESTATE, REVOCABLE, IRREVOCABLE, FAMILY, FARM(S),
   PROPERTIES, CORP, LTD, CO), repetidamente
4. "SOBRENOME, NOME" -> "NOME SOBRENOME" quando uma única vírgula
   separa duas partes não vazias
5. Remove pontuação
6. Colapsa espaços

O conjunto de regras é reaplicado até a saída estabilizar, então a
função é idempotente: normalize(normalize(s)) == normalize(s).

Exemplos:
    "Smith, John"            -> "JOHN SMITH"
    "SMITH FAMILY TRUST"     -> "SMITH"
    "Johnson Farms, L.L.C."  -> "JOHNSON"
"""

import re
from typing import Optional

SUFFIX_PATTERN = re.compile(
    r'[\s,]+('
    r'LLC|L\.?\s?L\.?\s?C\.?|'
    r'INC\.?|INCORPORATED|'
    r'TRUST|ESTATE|REVOCABLE|IRREVOCABLE|FAMILY|FARMS?|PROPERTIES|'
    r'CORP\.?|CORPORATION|'
    r'LTD\.?|LIMITED|'
    r'CO\.?'
    r')\s*$'
)

CONNECTOR_PATTERN = re.compile(r'\s*(?:\bAND\b|&)\s*')
PUNCTUATION_PATTERN = re.compile(r'[^\w\s]')
WHITESPACE_PATTERN = re.compile(r'\s+')

# Após a primeira passada, toda mudança encurta a string
_MAX_PASSES = 16


def _strip_suffixes(name: str) -> str:
    while True:
        stripped = SUFFIX_PATTERN.sub('', name)
        if stripped == name or not stripped.strip():
            return name
        name = stripped


def _flip_last_first(name: str) -> str:
    if name.count(',') != 1:
        return name
    last, first = (part.strip() for part in name.split(','))
    if not last or not first:
        return name
    return f"{first} {last}"


def _apply_rules(name: str) -> str:
    name = name.upper()
    name = CONNECTOR_PATTERN.sub(' ', name)
    name = _strip_suffixes(name.strip())
    name = _flip_last_first(name)
    name = PUNCTUATION_PATTERN.sub('', name)
    name = name.replace('_', '')
    return WHITESPACE_PATTERN.sub(' ', name).strip()


def normalize_owner_name(raw: Optional[str]) -> Optional[str]:
    """
    Normaliza o nome do proprietário.

    Args:
        raw: Nome como veio do deed holder (pode ser None/vazio)

    Returns:
        Chave normalizada, ou None quando não sobra nada (a parcela
        fica fora da agregação)
    """
    if raw is None:
        return None

    current = str(raw)
    for _ in range(_MAX_PASSES):
        nxt = _apply_rules(current)
        if nxt == current:
            break
        current = nxt

    return current or None


def surname_key(name: str) -> str:
    """Última palavra do nome normalizado (heurística de sobrenome)."""
    parts = name.split()
    return parts[-1] if parts else name
