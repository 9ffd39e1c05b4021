from __future__ import annotations

import re
from typing import Iterable, Sequence

from precos.database import ProdutoCanonico, RegraMapeamento
from precos.logger import setup_logging
from precos.normalizacao import minusculo

logger = setup_logging("classifiers.regras")


def regra_corresponde(nome: str, unidade: str, regra: RegraMapeamento) -> bool:
	"""Diz se a regra se aplica ao item.

	Com `sinonimos_unidade` preenchido, a unidade bruta (sem espaços nas
	pontas) precisa ser exatamente uma delas. `exact` e `contains` ignoram
	caixa; `regex` roda sem diferenciar caixa sobre o nome original e um
	padrão malformado nunca casa.
	"""

	unidade_item = (unidade or "").strip()
	if regra.sinonimos_unidade and unidade_item not in regra.sinonimos_unidade:
		return False

	if regra.tipo_match == "exact":
		return minusculo(nome) == minusculo(regra.padrao)
	if regra.tipo_match == "contains":
		return minusculo(regra.padrao) in minusculo(nome)
	if regra.tipo_match == "regex":
		try:
			return re.search(regra.padrao, nome or "", re.IGNORECASE) is not None
		except re.error as exc:
			logger.debug(f"Regra {regra.id} com regex inválida ({regra.padrao!r}): {exc}")
			return False
	return False


def resolver_produto(
	nome: str,
	unidade: str,
	regras: Sequence[RegraMapeamento],
	produtos: Iterable[ProdutoCanonico],
) -> int | None:
	"""Primeira regra ativa que casar vence; senão, nome igual ao `nome_base`."""

	for regra in regras:
		if not regra.ativo:
			continue
		if regra_corresponde(nome, unidade, regra):
			return regra.produto_alvo_id

	nome_minusculo = minusculo(nome)
	for produto in produtos:
		if minusculo(produto.nome_base) == nome_minusculo:
			return produto.id
	return None
