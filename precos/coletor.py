"""Coleta das notas: máquina de estados `pending -> processing -> done|error`.

Cada nota é processada de forma independente; o despacho apenas agenda as
extrações em um pool limitado de threads e retorna sem esperar por elas.
"""

from __future__ import annotations

import threading
from concurrent.futures import Executor, ThreadPoolExecutor
from pathlib import Path
from typing import Optional

import httpx

from precos.config import carregar_configuracao
from precos.database import (
	carregar_nota,
	criar_nota,
	exigir_usuario,
	listar_notas_pendentes,
	marcar_nota_concluida,
	marcar_nota_erro,
	marcar_nota_pendente,
	marcar_nota_processando,
	obter_nota,
)
from precos.logger import setup_logging
from precos.normalizacao import agora_ms
from precos.scrapers.nfce import ResultadoExtracao, baixar_html, extrair_nota_html, validar_url

logger = setup_logging("coletor")

# Coletas fazem um único GET (timeout padrão de 30 s); passado esse prazo a
# nota em `processing` é considerada abandonada
PRAZO_PROCESSAMENTO_MS = 10 * 60 * 1000

_executor: Optional[ThreadPoolExecutor] = None
_executor_lock = threading.Lock()


def _obter_executor() -> ThreadPoolExecutor:
	global _executor
	with _executor_lock:
		if _executor is None:
			_executor = ThreadPoolExecutor(
				max_workers=carregar_configuracao().max_coletas_simultaneas,
				thread_name_prefix="coleta-nfce",
			)
		return _executor


def encerrar_executor(*, aguardar: bool = True) -> None:
	"""Finaliza o pool padrão (as próximas coletas criam um novo)."""

	global _executor
	with _executor_lock:
		if _executor is not None:
			_executor.shutdown(wait=aguardar)
			_executor = None


def enviar_url(url: str, *, usuario_id: str | None, db_path: Path | str | None = None) -> int:
	"""Registra uma URL de NFC-e como nota `pending` e devolve o id."""

	usuario = exigir_usuario(usuario_id)
	if not validar_url(url):
		raise ValueError("Formato de URL de NFC-e inválido")
	nota_id = criar_nota(url.strip(), usuario, db_path=db_path)
	logger.info(f"Nota {nota_id} registrada para coleta: {url}")
	return nota_id


def reenviar_nota(nota_id: int, *, usuario_id: str | None, db_path: Path | str | None = None) -> None:
	"""Devolve uma nota `done`/`error` para `pending` (nova tentativa).

	Uma nota presa em `processing` por mais de `PRAZO_PROCESSAMENTO_MS`
	(processo interrompido no meio da coleta) também pode ser reenviada.
	"""

	usuario = exigir_usuario(usuario_id)
	nota = obter_nota(nota_id, usuario_id=usuario, db_path=db_path)
	if nota.status == "processing":
		if agora_ms() - (nota.ultima_execucao or 0) < PRAZO_PROCESSAMENTO_MS:
			raise ValueError(f"A nota {nota_id} ainda está sendo processada")
	elif nota.status not in ("done", "error"):
		raise ValueError(f"A nota {nota_id} está em '{nota.status}' e não pode ser reenviada")
	if not marcar_nota_pendente(nota_id, db_path=db_path):
		raise ValueError(f"A nota {nota_id} mudou de status e não foi reenviada")
	logger.info(f"Nota {nota_id} reenviada para coleta")


def despachar_pendentes(
	*,
	usuario_id: str | None = None,
	executor: Executor | None = None,
	client: httpx.Client | None = None,
	db_path: Path | str | None = None,
) -> int:
	"""Agenda uma extração por nota pendente e retorna quantas foram agendadas.

	Sem `usuario_id` todas as notas pendentes são consideradas (caminho do
	agendador interno). Não espera as extrações terminarem.
	"""

	pendentes = listar_notas_pendentes(usuario_id=usuario_id, db_path=db_path)
	if not pendentes:
		logger.info("Nenhuma nota pendente para processar.")
		return 0

	pool = executor or _obter_executor()
	for nota in pendentes:
		pool.submit(extrair_nota, nota.id, client=client, db_path=db_path)
	logger.info(f"Processamento iniciado para {len(pendentes)} nota(s).")
	return len(pendentes)


def extrair_nota(
	nota_id: int,
	*,
	client: httpx.Client | None = None,
	db_path: Path | str | None = None,
) -> ResultadoExtracao | None:
	"""Baixa e extrai uma nota, gravando o desfecho em uma única atualização.

	A nota só é processada se puder ser reivindicada (`pending` ou `error`);
	notas `done` ou já em coleta por outro despacho são ignoradas e o retorno
	é `None`. Falhas de rede, de extração e de banco não se propagam: viram
	`status=error` com a mensagem da exceção.
	"""

	try:
		nota = carregar_nota(nota_id, db_path=db_path)
		if nota is None:
			logger.warning(f"Nota {nota_id} não encontrada; nada a fazer.")
			return None
		if not marcar_nota_processando(nota_id, db_path=db_path):
			logger.info(f"Nota {nota_id} em '{nota.status}' não foi reivindicada; coleta ignorada.")
			return None
	except Exception as exc:
		logger.exception(f"Erro ao preparar a coleta da nota {nota_id}: {exc}")
		return None

	try:
		html = baixar_html(nota.url, client=client)
		resultado = extrair_nota_html(html)
	except httpx.HTTPError as exc:
		_registrar_erro(nota_id, _mensagem_erro(exc), db_path=db_path)
		return None
	except Exception as exc:
		logger.exception(f"Erro inesperado ao coletar a nota {nota_id}: {exc}")
		_registrar_erro(nota_id, _mensagem_erro(exc), db_path=db_path)
		return None

	try:
		if resultado.sucesso:
			gravado = marcar_nota_concluida(nota_id, resultado, db_path=db_path)
			logger.info(
				f"Nota {nota_id} concluída com {len(resultado.itens)} itens "
				f"({resultado.valor_total_texto})"
			)
		else:
			gravado = marcar_nota_erro(
				nota_id, resultado.erro or "Nenhum item encontrado na nota", db_path=db_path
			)
			logger.warning(f"Nota {nota_id} sem itens: {resultado.erro}")
		if not gravado:
			logger.warning(f"Nota {nota_id} saiu de 'processing' durante a coleta; resultado descartado.")
	except Exception as exc:
		logger.exception(f"Erro ao gravar o resultado da nota {nota_id}: {exc}")
		_registrar_erro(nota_id, _mensagem_erro(exc), db_path=db_path)
	return resultado


def _registrar_erro(nota_id: int, mensagem: str, *, db_path: Path | str | None) -> None:
	logger.error(f"Falha na coleta da nota {nota_id}: {mensagem}")
	try:
		marcar_nota_erro(nota_id, mensagem, db_path=db_path)
	except Exception:
		logger.exception(f"Não foi possível registrar o erro da nota {nota_id}")


def _mensagem_erro(exc: BaseException) -> str:
	return str(exc) or exc.__class__.__name__
