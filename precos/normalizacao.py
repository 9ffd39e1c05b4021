"""Conversões de textos no padrão brasileiro (moeda, números e datas).

Todas as funções são totais: nunca levantam exceção e não têm efeitos
colaterais, pois rodam dentro dos laços de extração e classificação.
"""

from __future__ import annotations

import re
import time
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

__all__ = [
	"agora_ms",
	"formatar_moeda",
	"limpar_numero",
	"minusculo",
	"parse_data_hora",
	"parse_valor",
	"parse_valor_robusto",
]

_MOEDA_RE = re.compile(r"[Rr]\$")
_ESPACOS_RE = re.compile(r"\s+")
# Número brasileiro: 1.234,56 / 12,5 / 3 (sem começar ou terminar no meio de outro número)
_NUMERO_BR_RE = re.compile(r"(?<![\d.,])-?\d{1,3}(?:\.\d{3})*(?:,\d+)?(?!\d|[.,]\d)")
_NUMERO_GENERICO_RE = re.compile(r"-?\d+(?:[.,]\d+)?")
_NAO_NUMERICO_RE = re.compile(r"[^\d,.\-]")
_DATA_HORA_RE = re.compile(
	r"(\d{2})/(\d{2})/(\d{4})(?:\s+(\d{2}):(\d{2})(?::(\d{2}))?)?"
)
_CENTAVOS = Decimal("0.01")


def parse_valor(texto: Any) -> Decimal:
	"""Converte `"R$ 1.234,56"` em `Decimal("1234.56")`; `0` em caso de falha."""

	if texto is None:
		return Decimal("0")
	s = str(texto).replace("\xa0", " ").strip()
	if not s:
		return Decimal("0")
	limpo = _MOEDA_RE.sub("", s)
	limpo = _ESPACOS_RE.sub("", limpo).replace(".", "").replace(",", ".")
	try:
		valor = Decimal(limpo)
	except (InvalidOperation, ValueError):
		return Decimal("0")
	if not valor.is_finite():
		return Decimal("0")
	return valor


def limpar_numero(texto: Any) -> str:
	"""Isola o trecho numérico de um texto ruidoso (ex.: `"Qtde.:1,5"` -> `"1,5"`).

	Tenta primeiro o formato brasileiro, depois um padrão genérico e, por
	último, remove tudo o que não for numérico. Sempre devolve a *última*
	ocorrência encontrada, pois rótulos e códigos costumam vir antes do valor.
	"""

	if texto is None:
		return ""
	s = str(texto).replace("\xa0", " ").strip()
	if not s:
		return ""
	encontrados = _NUMERO_BR_RE.findall(s)
	if encontrados:
		return encontrados[-1]
	encontrados = _NUMERO_GENERICO_RE.findall(s)
	if encontrados:
		return encontrados[-1]
	# Separadores soltos ("Qtde.:" -> ".") não são número
	return _NAO_NUMERICO_RE.sub("", s).strip(".,-")


def parse_valor_robusto(texto: Any) -> Decimal:
	return parse_valor(limpar_numero(texto))


def formatar_moeda(valor: Any) -> str:
	"""Formata um número como `R$ 1.234,56`."""

	try:
		numero = valor if isinstance(valor, Decimal) else Decimal(str(valor))
	except (InvalidOperation, ValueError, TypeError):
		numero = Decimal("0")
	if not numero.is_finite():
		numero = Decimal("0")
	numero = numero.quantize(_CENTAVOS, rounding=ROUND_HALF_UP)
	sinal = "-" if numero < 0 else ""
	inteiro, _, centavos = f"{abs(numero):.2f}".partition(".")
	grupos: list[str] = []
	while len(inteiro) > 3:
		grupos.insert(0, inteiro[-3:])
		inteiro = inteiro[:-3]
	grupos.insert(0, inteiro)
	return f"{sinal}R$ {'.'.join(grupos)},{centavos}"


def parse_data_hora(texto: Any) -> Optional[int]:
	"""Converte `dd/mm/aaaa[ hh:mm[:ss]]` (hora local) em epoch em milissegundos."""

	if not texto:
		return None
	match = _DATA_HORA_RE.search(str(texto))
	if not match:
		return None
	dia, mes, ano, hora, minuto, segundo = match.groups()
	try:
		dt = datetime(
			int(ano),
			int(mes),
			int(dia),
			int(hora or 0),
			int(minuto or 0),
			int(segundo or 0),
		)
		return int(dt.timestamp() * 1000)
	except (ValueError, OverflowError, OSError):
		return None


def minusculo(texto: Any) -> str:
	if not texto:
		return ""
	return str(texto).casefold()


def agora_ms() -> int:
	return int(time.time() * 1000)
