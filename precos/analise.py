"""Agregações de preço por dia, mês e estabelecimento."""

from __future__ import annotations

from collections import Counter, defaultdict
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Literal, Sequence

from precos.database import (
	NAO_CLASSIFICADO,
	ItemNota,
	exigir_usuario,
	listar_itens_classificados_produto,
	listar_itens_nota,
)
from precos.normalizacao import minusculo

Agregacao = Literal["avg", "min", "max"]
AGREGACOES: tuple[str, ...] = ("avg", "min", "max")
EMITENTE_DESCONHECIDO = "Desconhecido"
MESES_PADRAO = 12
MESES_MAXIMO = 36


@dataclass(slots=True)
class PontoPreco:
	chave: str
	valor: Decimal


@dataclass(slots=True)
class PrecoLoja:
	emitente: str
	valor: Decimal
	amostras: int


@dataclass(slots=True)
class ResumoNaoClassificados:
	total: int
	por_emitente: list[tuple[str, int]]
	unidades: list[tuple[str, int]]
	tokens: list[tuple[str, int]]


def agregar(valores: Sequence[Decimal], agregacao: str = "avg") -> Decimal:
	if agregacao not in AGREGACOES:
		raise ValueError(f"Agregação inválida: {agregacao!r}")
	if not valores:
		return Decimal("0")
	if agregacao == "min":
		return min(valores)
	if agregacao == "max":
		return max(valores)
	return sum(valores, Decimal("0")) / len(valores)


def tendencia_precos(
	produto_id: int,
	unidade: str,
	*,
	usuario_id: str | None,
	inicio_ts: int | None = None,
	fim_ts: int | None = None,
	agregacao: str = "avg",
	db_path: Path | str | None = None,
) -> list[PontoPreco]:
	"""Preço unitário agregado por dia (UTC), em ordem crescente de data."""

	itens = _itens_filtrados(produto_id, unidade, usuario_id, inicio_ts, fim_ts, db_path)
	grupos = _agrupar(itens, lambda item: _data_utc(item).strftime("%Y-%m-%d"))
	return [PontoPreco(chave, agregar(valores, agregacao)) for chave, valores in sorted(grupos.items())]


def medias_mensais(
	produto_id: int,
	unidade: str,
	*,
	usuario_id: str | None,
	meses: int | None = None,
	agregacao: str = "avg",
	db_path: Path | str | None = None,
) -> list[PontoPreco]:
	"""Preço unitário agregado por mês (UTC), limitado aos `meses` mais recentes."""

	solicitado = MESES_PADRAO if meses is None else meses
	limite = max(1, min(MESES_MAXIMO, solicitado))
	itens = _itens_filtrados(produto_id, unidade, usuario_id, None, None, db_path)
	grupos = _agrupar(itens, lambda item: _data_utc(item).strftime("%Y-%m"))
	pontos = [PontoPreco(chave, agregar(valores, agregacao)) for chave, valores in sorted(grupos.items())]
	return pontos[-limite:]


def comparar_precos_lojas(
	produto_id: int,
	unidade: str,
	*,
	usuario_id: str | None,
	inicio_ts: int | None = None,
	fim_ts: int | None = None,
	agregacao: str = "avg",
	db_path: Path | str | None = None,
) -> list[PrecoLoja]:
	"""Preço agregado por estabelecimento, do mais barato ao mais caro."""

	itens = _itens_filtrados(produto_id, unidade, usuario_id, inicio_ts, fim_ts, db_path)
	grupos = _agrupar(itens, lambda item: (item.emitente or "").strip() or EMITENTE_DESCONHECIDO)
	lojas = [
		PrecoLoja(emitente=emitente, valor=agregar(valores, agregacao), amostras=len(valores))
		for emitente, valores in grupos.items()
	]
	return sorted(lojas, key=lambda loja: (loja.valor, loja.emitente))


def resumo_nao_classificados(
	*,
	usuario_id: str | None,
	mes: int | None = None,
	ano: int | None = None,
	db_path: Path | str | None = None,
) -> ResumoNaoClassificados:
	"""Ajuda a escrever novas regras: onde e como aparecem os itens sem produto."""

	usuario = exigir_usuario(usuario_id)
	itens = listar_itens_nota(usuario, status_classificacao=NAO_CLASSIFICADO, db_path=db_path)
	if mes and ano:
		itens = [item for item in itens if _emitido_em(item, mes, ano)]

	emitentes = Counter((item.emitente or "").strip() or EMITENTE_DESCONHECIDO for item in itens)
	unidades = Counter((item.unidade or "").strip() or "?" for item in itens)
	tokens: Counter[str] = Counter()
	for item in itens:
		tokens.update(minusculo(item.nome).split())

	return ResumoNaoClassificados(
		total=len(itens),
		por_emitente=emitentes.most_common(20),
		unidades=unidades.most_common(20),
		tokens=tokens.most_common(50),
	)


def _itens_filtrados(
	produto_id: int,
	unidade: str,
	usuario_id: str | None,
	inicio_ts: int | None,
	fim_ts: int | None,
	db_path: Path | str | None,
) -> list[ItemNota]:
	usuario = exigir_usuario(usuario_id)
	itens = listar_itens_classificados_produto(produto_id, unidade, usuario_id=usuario, db_path=db_path)
	filtrados: list[ItemNota] = []
	for item in itens:
		ts = item.emissao_ts or 0
		if inicio_ts is not None and ts < inicio_ts:
			continue
		if fim_ts is not None and ts > fim_ts:
			continue
		filtrados.append(item)
	return filtrados


def _agrupar(itens: Iterable[ItemNota], chave) -> dict[str, list[Decimal]]:
	grupos: dict[str, list[Decimal]] = defaultdict(list)
	for item in itens:
		grupos[chave(item)].append(item.valor_unitario_num or Decimal("0"))
	return grupos


def _emitido_em(item: ItemNota, mes: int, ano: int) -> bool:
	if item.emissao_ts is None:
		return False
	data = datetime.fromtimestamp(item.emissao_ts / 1000)
	return data.month == mes and data.year == ano


def _data_utc(item: ItemNota) -> datetime:
	return datetime.fromtimestamp((item.emissao_ts or 0) / 1000, tz=timezone.utc)
