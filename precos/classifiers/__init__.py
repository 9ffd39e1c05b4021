"""Classificação de itens de notas em produtos canônicos via regras."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from precos.database import (
	atualizar_produto_item,
	exigir_usuario,
	listar_itens_nao_classificados,
	listar_notas,
	listar_produtos_canonicos,
	listar_regras,
	marcar_item_classificado,
	registrar_log_classificacao,
	substituir_itens_da_nota,
)
from precos.logger import setup_logging
from .regras import regra_corresponde, resolver_produto

logger = setup_logging("classifiers")

TAMANHO_LOTE_PADRAO = 200
TAMANHO_LOTE_MAXIMO = 500
MOTIVO_SEM_REGRA = "Nenhuma regra de mapeamento correspondeu"

__all__ = [
	"ResultadoClassificacao",
	"ResultadoSincronizacao",
	"atribuir_produto_item",
	"classificar_lote",
	"regra_corresponde",
	"resolver_produto",
	"sincronizar_itens",
]


@dataclass(slots=True)
class ResultadoSincronizacao:
	inseridos: int = 0
	removidos: int = 0


@dataclass(slots=True)
class ResultadoClassificacao:
	processados: int = 0
	classificados: int = 0
	falhas: int = 0


def sincronizar_itens(
	*,
	usuario_id: str | None,
	reprocessar_tudo: bool = False,
	db_path: Path | str | None = None,
) -> ResultadoSincronizacao:
	"""Achata os itens extraídos das notas do usuário em `itens_nota`.

	Só notas `done` são processadas, a menos que `reprocessar_tudo` seja
	verdadeiro. Para cada nota, os itens anteriores são apagados e reinseridos
	como `UNCLASSIFIED`, então rodar duas vezes seguidas não duplica nada.
	"""

	usuario = exigir_usuario(usuario_id)
	resultado = ResultadoSincronizacao()
	for nota in listar_notas(usuario, db_path=db_path):
		if not reprocessar_tudo and nota.status != "done":
			continue
		inseridos, removidos = substituir_itens_da_nota(
			nota, reinserir=nota.status == "done", db_path=db_path
		)
		resultado.inseridos += inseridos
		resultado.removidos += removidos
	logger.info(
		f"Sincronização concluída: {resultado.inseridos} inseridos, {resultado.removidos} removidos."
	)
	return resultado


def classificar_lote(
	*,
	usuario_id: str | None,
	tamanho_lote: int | None = None,
	db_path: Path | str | None = None,
) -> ResultadoClassificacao:
	"""Aplica as regras de mapeamento a um lote de itens pendentes do usuário."""

	usuario = exigir_usuario(usuario_id)
	solicitado = TAMANHO_LOTE_PADRAO if tamanho_lote is None else tamanho_lote
	limite = max(1, min(TAMANHO_LOTE_MAXIMO, solicitado))

	regras = listar_regras(apenas_ativas=True, db_path=db_path)
	produtos = listar_produtos_canonicos(db_path=db_path)
	itens = listar_itens_nao_classificados(usuario, limit=limite, db_path=db_path)
	if not itens:
		logger.info("Nenhum item pendente de classificação.")
		return ResultadoClassificacao()

	logger.info(f"Iniciando classificação de {len(itens)} itens com {len(regras)} regras ativas.")
	resultado = ResultadoClassificacao(processados=len(itens))
	for item in itens:
		produto_id = resolver_produto(item.nome, item.unidade, regras, produtos)
		if produto_id is not None:
			if marcar_item_classificado(item.id, produto_id, db_path=db_path):
				resultado.classificados += 1
			else:
				logger.debug(f"Item {item.id} já classificado por outro lote.")
			continue
		registrar_log_classificacao(item, MOTIVO_SEM_REGRA, db_path=db_path)
		resultado.falhas += 1

	logger.info(
		f"Classificação concluída. {resultado.classificados} classificados, {resultado.falhas} sem regra."
	)
	return resultado


def atribuir_produto_item(
	item_id: int,
	produto_id: int | None,
	*,
	usuario_id: str | None,
	db_path: Path | str | None = None,
) -> None:
	"""Correção manual: fixa (ou limpa, com `None`) o produto de um item."""

	usuario = exigir_usuario(usuario_id)
	atualizar_produto_item(item_id, produto_id, usuario_id=usuario, db_path=db_path)
	logger.info(f"Item {item_id} atribuído manualmente ao produto {produto_id}")
