"""Execução periódica das tarefas idempotentes (coleta, sincronização e classificação)."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from precos.classifiers import classificar_lote, sincronizar_itens
from precos.coletor import despachar_pendentes
from precos.config import carregar_configuracao
from precos.logger import setup_logging

logger = setup_logging("agendamento")

UM_DIA = 24 * 60 * 60


@dataclass(frozen=True, slots=True)
class Tarefa:
	nome: str
	intervalo_segundos: float
	executar: Callable[[], object]


class AgendadorPeriodico:
	"""Roda cada tarefa a cada intervalo em um `BackgroundScheduler`.

	Execuções atrasadas são agrupadas e nunca há duas execuções simultâneas
	da mesma tarefa. Erros são logados e não interrompem as próximas.
	"""

	def __init__(self, tarefas: list[Tarefa]):
		self.tarefas = list(tarefas)
		self._scheduler: BackgroundScheduler | None = None

	@property
	def em_execucao(self) -> bool:
		return self._scheduler is not None and self._scheduler.running

	def iniciar(self) -> None:
		if self.em_execucao:
			return
		scheduler = BackgroundScheduler(job_defaults={"coalesce": True, "max_instances": 1})
		scheduler.add_listener(self._registrar_evento, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR)
		for tarefa in self.tarefas:
			scheduler.add_job(
				tarefa.executar,
				IntervalTrigger(seconds=tarefa.intervalo_segundos),
				id=tarefa.nome,
				name=tarefa.nome,
			)
		scheduler.start()
		self._scheduler = scheduler
		logger.info(f"Agendador iniciado com {len(self.tarefas)} tarefa(s).")

	def parar(self, *, aguardar: bool = True) -> None:
		if self._scheduler is None:
			return
		if self._scheduler.running:
			self._scheduler.shutdown(wait=aguardar)
		self._scheduler = None
		logger.info("Agendador parado.")

	def executar_agora(self, nome: str) -> object:
		for tarefa in self.tarefas:
			if tarefa.nome == nome:
				return tarefa.executar()
		raise KeyError(f"Tarefa desconhecida: {nome}")

	def _registrar_evento(self, evento: JobExecutionEvent) -> None:
		if evento.exception is not None:
			logger.error(f"Erro na tarefa '{evento.job_id}': {evento.exception}\n{evento.traceback}")
		else:
			logger.info(f"Tarefa '{evento.job_id}' executada: {evento.retval}")


def tarefas_padrao(
	*,
	usuario_id: str | None = None,
	intervalo_coleta: float = UM_DIA,
	intervalo_classificacao: float | None = None,
) -> list[Tarefa]:
	"""Coleta diária de todas as notas pendentes e, opcionalmente, sync+classificação.

	Sincronização e classificação dependem do usuário; só entram na lista
	quando `intervalo_classificacao` é informado.
	"""

	tarefas = [Tarefa("coleta", intervalo_coleta, despachar_pendentes)]
	if intervalo_classificacao is not None:
		usuario = usuario_id or carregar_configuracao().usuario_padrao

		def sincronizar_e_classificar() -> object:
			sincronizacao = sincronizar_itens(usuario_id=usuario)
			classificacao = classificar_lote(
				usuario_id=usuario, tamanho_lote=carregar_configuracao().tamanho_lote_padrao
			)
			return sincronizacao, classificacao

		tarefas.append(Tarefa("classificacao", intervalo_classificacao, sincronizar_e_classificar))
	return tarefas
