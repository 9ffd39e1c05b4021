"""Camada de persistência em DuckDB.

Guarda as notas submetidas (com os itens extraídos embutidos em JSON), a
projeção achatada de itens usada pela classificação, o catálogo de produtos
canônicos, as regras de mapeamento e o log de classificações sem sucesso.
Todos os instantes são gravados em epoch (milissegundos)."""

from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, localcontext
from pathlib import Path
from typing import Any, Iterator, Literal, Optional, Sequence

import duckdb

from precos.config import carregar_configuracao
from precos.logger import setup_logging
from precos.normalizacao import agora_ms, parse_valor
from precos.scrapers.nfce import ItemBruto, ResultadoExtracao

logger = setup_logging("database")

StatusNota = Literal["pending", "processing", "done", "error"]
StatusClassificacao = Literal["CLASSIFIED", "UNCLASSIFIED"]
TipoMatch = Literal["exact", "contains", "regex"]

STATUS_NOTA: tuple[str, ...] = ("pending", "processing", "done", "error")
TIPOS_MATCH: tuple[str, ...] = ("exact", "contains", "regex")
CLASSIFICADO = "CLASSIFIED"
NAO_CLASSIFICADO = "UNCLASSIFIED"
# Status de origem aceitos por cada status de destino
TRANSICOES_NOTA: dict[str, tuple[str, ...]] = {
	"processing": ("pending", "error"),
	"done": ("processing",),
	"error": ("processing",),
	"pending": ("done", "error", "processing"),
}
# Valores numéricos precisam caber em DECIMAL(38, 10)
LIMITE_NUMERICO = Decimal(10) ** 28
_ESCALA_COLUNA = Decimal("1e-10")

_SCHEMA_DEFINITIONS: tuple[str, ...] = (
	"""
	CREATE SEQUENCE IF NOT EXISTS seq_notas START 1
	""",
	"""
	CREATE TABLE IF NOT EXISTS notas (
		id INTEGER PRIMARY KEY DEFAULT nextval('seq_notas'),
		url TEXT NOT NULL,
		status VARCHAR NOT NULL,
		usuario_id VARCHAR NOT NULL,
		ultima_execucao BIGINT,
		emissao_ts BIGINT,
		emissao_texto TEXT,
		emitente TEXT,
		valor_total DECIMAL(38, 10),
		valor_total_texto TEXT,
		itens_extraidos TEXT,
		mensagem_erro TEXT,
		criado_em BIGINT
	)
	""",
	"""
	CREATE SEQUENCE IF NOT EXISTS seq_itens_nota START 1
	""",
	"""
	CREATE TABLE IF NOT EXISTS itens_nota (
		id INTEGER PRIMARY KEY DEFAULT nextval('seq_itens_nota'),
		nota_id INTEGER NOT NULL,
		usuario_id VARCHAR NOT NULL,
		sequencia INTEGER NOT NULL,
		emissao_ts BIGINT,
		emitente TEXT,
		nome TEXT NOT NULL,
		quantidade TEXT,
		unidade TEXT,
		valor_unitario TEXT,
		valor_total TEXT,
		quantidade_num DECIMAL(38, 10),
		valor_unitario_num DECIMAL(38, 10),
		valor_total_num DECIMAL(38, 10),
		produto_canonico_id INTEGER,
		status_classificacao VARCHAR NOT NULL,
		classificado_em BIGINT,
		criado_em BIGINT,
		atualizado_em BIGINT
	)
	""",
	"""
	CREATE SEQUENCE IF NOT EXISTS seq_produtos_canonicos START 1
	""",
	"""
	CREATE TABLE IF NOT EXISTS produtos_canonicos (
		id INTEGER PRIMARY KEY DEFAULT nextval('seq_produtos_canonicos'),
		nome_base TEXT NOT NULL,
		unidade VARCHAR NOT NULL,
		detalhe_unidade TEXT,
		criado_em BIGINT,
		atualizado_em BIGINT,
		UNIQUE (nome_base, unidade)
	)
	""",
	"""
	CREATE SEQUENCE IF NOT EXISTS seq_regras_mapeamento START 1
	""",
	"""
	CREATE TABLE IF NOT EXISTS regras_mapeamento (
		id INTEGER PRIMARY KEY DEFAULT nextval('seq_regras_mapeamento'),
		padrao TEXT NOT NULL,
		tipo_match VARCHAR NOT NULL,
		produto_alvo_id INTEGER NOT NULL,
		sinonimos_unidade TEXT,
		ativo BOOLEAN DEFAULT TRUE,
		prioridade INTEGER DEFAULT 0,
		observacoes TEXT,
		criado_em BIGINT,
		atualizado_em BIGINT
	)
	""",
	"""
	CREATE SEQUENCE IF NOT EXISTS seq_logs_classificacao START 1
	""",
	"""
	CREATE TABLE IF NOT EXISTS logs_classificacao (
		id INTEGER PRIMARY KEY DEFAULT nextval('seq_logs_classificacao'),
		item_id INTEGER NOT NULL,
		motivo TEXT NOT NULL,
		nome TEXT,
		unidade TEXT,
		quantidade TEXT,
		criado_em BIGINT
	)
	""",
)

_schema_lock = threading.Lock()
_schemas_aplicados: set[str] = set()


class RegistroNaoEncontrado(LookupError):
	"""Registro inexistente ou pertencente a outro usuário."""


class ProdutoDuplicado(ValueError):
	"""Já existe produto canônico com o mesmo nome base e unidade."""


@dataclass(slots=True)
class Nota:
	id: int
	url: str
	status: str
	usuario_id: str
	ultima_execucao: Optional[int] = None
	emissao_ts: Optional[int] = None
	emissao_texto: Optional[str] = None
	emitente: Optional[str] = None
	valor_total: Optional[Decimal] = None
	valor_total_texto: Optional[str] = None
	itens_extraidos: list[ItemBruto] = field(default_factory=list)
	mensagem_erro: Optional[str] = None
	criado_em: Optional[int] = None


@dataclass(slots=True)
class ItemNota:
	id: int
	nota_id: int
	usuario_id: str
	sequencia: int
	emissao_ts: Optional[int]
	emitente: Optional[str]
	nome: str
	quantidade: str
	unidade: str
	valor_unitario: str
	valor_total: str
	quantidade_num: Optional[Decimal]
	valor_unitario_num: Optional[Decimal]
	valor_total_num: Optional[Decimal]
	produto_canonico_id: Optional[int]
	status_classificacao: str
	classificado_em: Optional[int]


@dataclass(slots=True)
class ProdutoCanonico:
	id: int
	nome_base: str
	unidade: str
	detalhe_unidade: Optional[str] = None
	criado_em: Optional[int] = None
	atualizado_em: Optional[int] = None


@dataclass(slots=True)
class RegraMapeamento:
	id: int
	padrao: str
	tipo_match: str
	produto_alvo_id: int
	sinonimos_unidade: Optional[list[str]] = None
	ativo: bool = True
	prioridade: int = 0
	observacoes: Optional[str] = None


@dataclass(slots=True)
class LogClassificacao:
	id: int
	item_id: int
	motivo: str
	nome: Optional[str]
	unidade: Optional[str]
	quantidade: Optional[str]
	criado_em: Optional[int]


@dataclass(slots=True)
class ItemComDetalhes:
	item: ItemNota
	nota_url: Optional[str]
	nota_emissao_texto: Optional[str]
	nota_valor_total: Optional[Decimal]
	nota_valor_total_texto: Optional[str]
	produto: Optional[ProdutoCanonico]


_COLUNAS_NOTA = """
	id, url, status, usuario_id, ultima_execucao, emissao_ts, emissao_texto,
	emitente, valor_total, valor_total_texto, itens_extraidos, mensagem_erro, criado_em
"""

_COLUNAS_ITEM = """
	id, nota_id, usuario_id, sequencia, emissao_ts, emitente, nome, quantidade,
	unidade, valor_unitario, valor_total, quantidade_num, valor_unitario_num,
	valor_total_num, produto_canonico_id, status_classificacao, classificado_em
"""


def _resolver_caminho_banco(db_path: Path | str | None = None) -> Path:
	caminho = Path(db_path) if db_path is not None else carregar_configuracao().db_path
	caminho.parent.mkdir(parents=True, exist_ok=True)
	return caminho


def _aplicar_schema(con: duckdb.DuckDBPyConnection, chave: str) -> None:
	if chave in _schemas_aplicados:
		return
	with _schema_lock:
		if chave in _schemas_aplicados:
			return
		for ddl in _SCHEMA_DEFINITIONS:
			con.execute(ddl)
		_schemas_aplicados.add(chave)


@contextmanager
def conexao(db_path: Path | str | None = None) -> Iterator[duckdb.DuckDBPyConnection]:
	"""Abre uma conexão com o DuckDB garantindo que o schema exista."""

	caminho = _resolver_caminho_banco(db_path)
	con = duckdb.connect(str(caminho))
	try:
		_aplicar_schema(con, str(caminho.resolve()))
		yield con
	except duckdb.Error as e:
		logger.error(f"Erro no banco de dados: {e}")
		raise
	finally:
		con.close()


def inicializar_banco(db_path: Path | str | None = None) -> duckdb.DuckDBPyConnection:
	"""Cria (se necessário) e retorna uma conexão pronta para uso."""

	caminho = _resolver_caminho_banco(db_path)
	con = duckdb.connect(str(caminho))
	_aplicar_schema(con, str(caminho.resolve()))
	logger.info("Schema do banco de dados inicializado com sucesso.")
	return con


def exigir_usuario(usuario_id: Optional[str]) -> str:
	"""Garante que a chamada veio de um usuário autenticado."""

	usuario = (usuario_id or "").strip()
	if not usuario:
		raise PermissionError("Não autenticado")
	return usuario


# ---------------------------------------------------------------------------
# Notas
# ---------------------------------------------------------------------------


def criar_nota(url: str, usuario_id: str, *, db_path: Path | str | None = None) -> int:
	with conexao(db_path) as con:
		row = con.execute(
			"""
			INSERT INTO notas (url, status, usuario_id, criado_em)
			VALUES (?, 'pending', ?, ?)
			RETURNING id
			""",
			[url, usuario_id, agora_ms()],
		).fetchone()
	if not row:
		raise RuntimeError("Não foi possível criar a nota")
	return int(row[0])


def carregar_nota(nota_id: int, *, db_path: Path | str | None = None) -> Nota | None:
	"""Busca a nota sem checar o dono (uso interno do coletor)."""

	with conexao(db_path) as con:
		row = con.execute(
			f"SELECT {_COLUNAS_NOTA} FROM notas WHERE id = ?",
			[nota_id],
		).fetchone()
	return _nota_de_row(row) if row else None


def obter_nota(nota_id: int, *, usuario_id: str, db_path: Path | str | None = None) -> Nota:
	nota = carregar_nota(nota_id, db_path=db_path)
	if nota is None or nota.usuario_id != usuario_id:
		raise RegistroNaoEncontrado("Nota não encontrada")
	return nota


def listar_notas(usuario_id: str, *, db_path: Path | str | None = None) -> list[Nota]:
	"""Notas do usuário, mais recentes primeiro."""

	with conexao(db_path) as con:
		rows = con.execute(
			f"SELECT {_COLUNAS_NOTA} FROM notas WHERE usuario_id = ? ORDER BY id DESC",
			[usuario_id],
		).fetchall()
	return [_nota_de_row(row) for row in rows]


def listar_notas_pendentes(
	*, usuario_id: str | None = None, db_path: Path | str | None = None
) -> list[Nota]:
	"""Notas em `pending`; sem `usuario_id` lista as de todos os usuários."""

	query = f"SELECT {_COLUNAS_NOTA} FROM notas WHERE status = 'pending'"
	params: list[object] = []
	if usuario_id is not None:
		query += " AND usuario_id = ?"
		params.append(usuario_id)
	query += " ORDER BY id"
	with conexao(db_path) as con:
		rows = con.execute(query, params).fetchall()
	return [_nota_de_row(row) for row in rows]


def remover_nota(nota_id: int, *, usuario_id: str, db_path: Path | str | None = None) -> None:
	obter_nota(nota_id, usuario_id=usuario_id, db_path=db_path)
	with conexao(db_path) as con:
		con.execute("BEGIN TRANSACTION")
		try:
			con.execute("DELETE FROM itens_nota WHERE nota_id = ?", [nota_id])
			con.execute("DELETE FROM notas WHERE id = ?", [nota_id])
			con.execute("COMMIT")
		except Exception:
			con.execute("ROLLBACK")
			raise


def marcar_nota_pendente(nota_id: int, *, db_path: Path | str | None = None) -> bool:
	return _atualizar_status_nota(nota_id, "pending", db_path=db_path)


def marcar_nota_processando(nota_id: int, *, db_path: Path | str | None = None) -> bool:
	"""Reivindica a nota para uma coleta; `False` se ela não estava disponível."""

	return _atualizar_status_nota(nota_id, "processing", db_path=db_path)


def marcar_nota_erro(nota_id: int, mensagem: str, *, db_path: Path | str | None = None) -> bool:
	return _atualizar_status_nota(
		nota_id, "error", mensagem_erro=mensagem or "Erro desconhecido", db_path=db_path
	)


def marcar_nota_concluida(
	nota_id: int, resultado: ResultadoExtracao, *, db_path: Path | str | None = None
) -> bool:
	if not resultado.itens:
		raise ValueError("Uma nota concluída precisa de ao menos um item extraído.")
	return _atualizar_status_nota(
		nota_id,
		"done",
		emissao_ts=resultado.emissao_ts,
		emissao_texto=resultado.emissao_texto,
		emitente=resultado.emitente,
		valor_total=resultado.valor_total,
		valor_total_texto=resultado.valor_total_texto,
		itens=resultado.itens,
		db_path=db_path,
	)


def _atualizar_status_nota(
	nota_id: int,
	status: StatusNota,
	*,
	emissao_ts: int | None = None,
	emissao_texto: str | None = None,
	emitente: str | None = None,
	valor_total: Decimal | None = None,
	valor_total_texto: str | None = None,
	itens: Sequence[ItemBruto] | None = None,
	mensagem_erro: str | None = None,
	db_path: Path | str | None = None,
) -> bool:
	"""Grava o estado completo da nota em um único UPDATE.

	Campos não informados são limpos, de modo que nunca sobra resultado
	parcial de uma execução anterior. O UPDATE só acontece se o status atual
	permitir a transição (`TRANSICOES_NOTA`); retorna se a nota foi alterada.
	"""

	origens = TRANSICOES_NOTA[status]
	itens_json = (
		json.dumps([item.to_dict() for item in itens], ensure_ascii=False) if itens else None
	)
	with conexao(db_path) as con:
		row = con.execute(
			f"""
			UPDATE notas
			SET
				status = ?,
				ultima_execucao = ?,
				emissao_ts = ?,
				emissao_texto = ?,
				emitente = ?,
				valor_total = ?,
				valor_total_texto = ?,
				itens_extraidos = ?,
				mensagem_erro = ?
			WHERE id = ? AND status IN ({', '.join('?' for _ in origens)})
			RETURNING id
			""",
			[
				status,
				agora_ms(),
				emissao_ts,
				emissao_texto,
				emitente,
				_valor_para_coluna(valor_total),
				valor_total_texto,
				itens_json,
				mensagem_erro,
				nota_id,
				*origens,
			],
		).fetchone()
	if row is None:
		logger.debug(f"Nota {nota_id}: transição para {status} recusada")
		return False
	logger.debug(f"Nota {nota_id} -> {status}")
	return True


def _nota_de_row(row: Sequence[Any]) -> Nota:
	return Nota(
		id=int(row[0]),
		url=row[1],
		status=row[2],
		usuario_id=row[3],
		ultima_execucao=row[4],
		emissao_ts=row[5],
		emissao_texto=row[6],
		emitente=row[7],
		valor_total=_para_decimal(row[8]),
		valor_total_texto=row[9],
		itens_extraidos=_itens_de_json(row[10]),
		mensagem_erro=row[11],
		criado_em=row[12],
	)


def _itens_de_json(texto: str | None) -> list[ItemBruto]:
	if not texto:
		return []
	try:
		dados = json.loads(texto)
	except json.JSONDecodeError:
		logger.error("Itens extraídos com JSON inválido; ignorando.")
		return []
	return [ItemBruto.from_dict(item) for item in dados if isinstance(item, dict)]


# ---------------------------------------------------------------------------
# Itens achatados
# ---------------------------------------------------------------------------


def substituir_itens_da_nota(
	nota: Nota, *, reinserir: bool = True, db_path: Path | str | None = None
) -> tuple[int, int]:
	"""Apaga os itens achatados da nota e reinsere a partir de `itens_extraidos`.

	Retorna `(inseridos, removidos)`. Tudo na mesma transação.
	"""

	agora = agora_ms()
	itens = nota.itens_extraidos if reinserir else []
	with conexao(db_path) as con:
		con.execute("BEGIN TRANSACTION")
		try:
			removidos_row = con.execute(
				"SELECT COUNT(*) FROM itens_nota WHERE nota_id = ? AND usuario_id = ?",
				[nota.id, nota.usuario_id],
			).fetchone()
			con.execute(
				"DELETE FROM itens_nota WHERE nota_id = ? AND usuario_id = ?",
				[nota.id, nota.usuario_id],
			)
			for sequencia, item in enumerate(itens, start=1):
				con.execute(
					"""
					INSERT INTO itens_nota (
						nota_id, usuario_id, sequencia, emissao_ts, emitente,
						nome, quantidade, unidade, valor_unitario, valor_total,
						quantidade_num, valor_unitario_num, valor_total_num,
						produto_canonico_id, status_classificacao, classificado_em,
						criado_em, atualizado_em
					) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, NULL, ?, NULL, ?, ?)
					""",
					[
						nota.id,
						nota.usuario_id,
						sequencia,
						nota.emissao_ts,
						nota.emitente,
						item.nome,
						item.quantidade,
						item.unidade,
						item.valor_unitario,
						item.valor_total,
						_valor_para_coluna(parse_valor(item.quantidade)),
						_valor_para_coluna(parse_valor(item.valor_unitario)),
						_valor_para_coluna(parse_valor(item.valor_total)),
						NAO_CLASSIFICADO,
						agora,
						agora,
					],
				)
			con.execute("COMMIT")
		except Exception:
			con.execute("ROLLBACK")
			raise
	removidos = int(removidos_row[0]) if removidos_row else 0
	return len(itens), removidos


def listar_itens_nao_classificados(
	usuario_id: str, *, limit: int, db_path: Path | str | None = None
) -> list[ItemNota]:
	with conexao(db_path) as con:
		rows = con.execute(
			f"""
			SELECT {_COLUNAS_ITEM}
			FROM itens_nota
			WHERE status_classificacao = ? AND usuario_id = ?
			ORDER BY id
			LIMIT ?
			""",
			[NAO_CLASSIFICADO, usuario_id, limit],
		).fetchall()
	return [_item_de_row(row) for row in rows]


def listar_itens_nota(
	usuario_id: str,
	*,
	nota_id: int | None = None,
	status_classificacao: str | None = None,
	db_path: Path | str | None = None,
) -> list[ItemNota]:
	filtros = ["usuario_id = ?"]
	params: list[object] = [usuario_id]
	if nota_id is not None:
		filtros.append("nota_id = ?")
		params.append(nota_id)
	if status_classificacao is not None:
		filtros.append("status_classificacao = ?")
		params.append(status_classificacao)
	with conexao(db_path) as con:
		rows = con.execute(
			f"SELECT {_COLUNAS_ITEM} FROM itens_nota WHERE {' AND '.join(filtros)} ORDER BY nota_id, sequencia",
			params,
		).fetchall()
	return [_item_de_row(row) for row in rows]


def listar_itens_classificados_produto(
	produto_id: int,
	unidade: str,
	*,
	usuario_id: str,
	db_path: Path | str | None = None,
) -> list[ItemNota]:
	"""Itens classificados no produto, com a unidade bruta exatamente igual."""

	with conexao(db_path) as con:
		rows = con.execute(
			f"""
			SELECT {_COLUNAS_ITEM}
			FROM itens_nota
			WHERE produto_canonico_id = ? AND usuario_id = ? AND unidade = ?
			ORDER BY emissao_ts NULLS FIRST, id
			""",
			[produto_id, usuario_id, unidade],
		).fetchall()
	return [_item_de_row(row) for row in rows]


def marcar_item_classificado(
	item_id: int, produto_id: int, *, db_path: Path | str | None = None
) -> bool:
	"""Classifica o item se ele ainda estiver pendente.

	O filtro por `UNCLASSIFIED` garante uma única classificação por item mesmo
	com lotes concorrentes. Retorna `False` quando outro lote chegou antes.
	"""

	agora = agora_ms()
	with conexao(db_path) as con:
		row = con.execute(
			"""
			UPDATE itens_nota
			SET
				produto_canonico_id = ?,
				status_classificacao = ?,
				classificado_em = ?,
				atualizado_em = ?
			WHERE id = ? AND status_classificacao = ?
			RETURNING id
			""",
			[produto_id, CLASSIFICADO, agora, agora, item_id, NAO_CLASSIFICADO],
		).fetchone()
	return row is not None


def atualizar_produto_item(
	item_id: int,
	produto_id: int | None,
	*,
	usuario_id: str,
	db_path: Path | str | None = None,
) -> None:
	"""Atribuição manual (ou remoção) do produto canônico de um item."""

	with conexao(db_path) as con:
		row = con.execute(
			"SELECT usuario_id FROM itens_nota WHERE id = ?", [item_id]
		).fetchone()
		if not row or row[0] != usuario_id:
			raise RegistroNaoEncontrado("Item não encontrado ou acesso negado")
		if produto_id is not None:
			existe = con.execute(
				"SELECT 1 FROM produtos_canonicos WHERE id = ?", [produto_id]
			).fetchone()
			if not existe:
				raise RegistroNaoEncontrado("Produto canônico não encontrado")
		agora = agora_ms()
		con.execute(
			"""
			UPDATE itens_nota
			SET
				produto_canonico_id = ?,
				status_classificacao = ?,
				classificado_em = ?,
				atualizado_em = ?
			WHERE id = ?
			""",
			[
				produto_id,
				CLASSIFICADO if produto_id is not None else NAO_CLASSIFICADO,
				agora if produto_id is not None else None,
				agora,
				item_id,
			],
		)


def listar_itens_com_detalhes(
	usuario_id: str,
	*,
	mes: int | None = None,
	ano: int | None = None,
	db_path: Path | str | None = None,
) -> list[ItemComDetalhes]:
	"""Itens do usuário com dados da nota e do produto, mais recentes primeiro.

	`mes`/`ano` filtram pela data de emissão (hora local); itens sem data
	ficam de fora quando o filtro é usado.
	"""

	colunas_item = ", ".join(f"i.{col.strip()}" for col in _COLUNAS_ITEM.split(","))
	with conexao(db_path) as con:
		rows = con.execute(
			f"""
			SELECT
				{colunas_item},
				n.url, n.emissao_texto, n.valor_total, n.valor_total_texto, n.emitente,
				p.id, p.nome_base, p.unidade, p.detalhe_unidade, p.criado_em, p.atualizado_em
			FROM itens_nota i
			LEFT JOIN notas n ON n.id = i.nota_id
			LEFT JOIN produtos_canonicos p ON p.id = i.produto_canonico_id
			WHERE i.usuario_id = ?
			ORDER BY COALESCE(i.emissao_ts, 0) DESC, i.id
			""",
			[usuario_id],
		).fetchall()

	resultado: list[ItemComDetalhes] = []
	for row in rows:
		item = _item_de_row(row[:17])
		if item.emitente is None and row[21]:
			item.emitente = row[21]
		if mes is not None and ano is not None:
			if item.emissao_ts is None:
				continue
			data = datetime.fromtimestamp(item.emissao_ts / 1000)
			if data.month != mes or data.year != ano:
				continue
		produto = (
			ProdutoCanonico(
				id=int(row[22]),
				nome_base=row[23],
				unidade=row[24],
				detalhe_unidade=row[25],
				criado_em=row[26],
				atualizado_em=row[27],
			)
			if row[22] is not None
			else None
		)
		resultado.append(
			ItemComDetalhes(
				item=item,
				nota_url=row[17],
				nota_emissao_texto=row[18],
				nota_valor_total=_para_decimal(row[19]),
				nota_valor_total_texto=row[20],
				produto=produto,
			)
		)
	return resultado


def _item_de_row(row: Sequence[Any]) -> ItemNota:
	return ItemNota(
		id=int(row[0]),
		nota_id=int(row[1]),
		usuario_id=row[2],
		sequencia=int(row[3]),
		emissao_ts=row[4],
		emitente=row[5],
		nome=row[6],
		quantidade=row[7] or "",
		unidade=row[8] or "",
		valor_unitario=row[9] or "",
		valor_total=row[10] or "",
		quantidade_num=_para_decimal(row[11]),
		valor_unitario_num=_para_decimal(row[12]),
		valor_total_num=_para_decimal(row[13]),
		produto_canonico_id=row[14],
		status_classificacao=row[15],
		classificado_em=row[16],
	)


# ---------------------------------------------------------------------------
# Catálogo: produtos canônicos e regras
# ---------------------------------------------------------------------------


def criar_produto_canonico(
	nome_base: str,
	unidade: str,
	detalhe_unidade: str | None = None,
	*,
	usuario_id: str | None,
	db_path: Path | str | None = None,
) -> ProdutoCanonico:
	exigir_usuario(usuario_id)
	nome = _limpar_texto_curto(nome_base)
	unidade_limpa = _limpar_texto_curto(unidade)
	if not nome:
		raise ValueError("nome_base não pode ser vazio")
	if not unidade_limpa:
		raise ValueError("unidade não pode ser vazia")
	agora = agora_ms()
	with conexao(db_path) as con:
		existe = con.execute(
			"SELECT 1 FROM produtos_canonicos WHERE nome_base = ? AND unidade = ?",
			[nome, unidade_limpa],
		).fetchone()
		if existe:
			raise ProdutoDuplicado(
				"Já existe produto canônico com o mesmo nome base e unidade"
			)
		row = con.execute(
			"""
			INSERT INTO produtos_canonicos (nome_base, unidade, detalhe_unidade, criado_em, atualizado_em)
			VALUES (?, ?, ?, ?, ?)
			RETURNING id
			""",
			[nome, unidade_limpa, _limpar_texto_curto(detalhe_unidade), agora, agora],
		).fetchone()
	if not row:
		raise RuntimeError("Não foi possível criar o produto canônico")
	logger.info(f"Produto canônico criado: {nome} ({unidade_limpa})")
	return ProdutoCanonico(
		id=int(row[0]),
		nome_base=nome,
		unidade=unidade_limpa,
		detalhe_unidade=_limpar_texto_curto(detalhe_unidade),
		criado_em=agora,
		atualizado_em=agora,
	)


def atualizar_produto_canonico(
	produto_id: int,
	*,
	usuario_id: str | None,
	nome_base: str | None = None,
	unidade: str | None = None,
	detalhe_unidade: str | None = None,
	db_path: Path | str | None = None,
) -> ProdutoCanonico:
	exigir_usuario(usuario_id)
	atual = obter_produto_canonico(produto_id, db_path=db_path)
	nome = _limpar_texto_curto(nome_base) if nome_base is not None else atual.nome_base
	unidade_nova = _limpar_texto_curto(unidade) if unidade is not None else atual.unidade
	detalhe = (
		_limpar_texto_curto(detalhe_unidade)
		if detalhe_unidade is not None
		else atual.detalhe_unidade
	)
	if not nome or not unidade_nova:
		raise ValueError("nome_base e unidade não podem ser vazios")
	with conexao(db_path) as con:
		conflito = con.execute(
			"SELECT 1 FROM produtos_canonicos WHERE nome_base = ? AND unidade = ? AND id <> ?",
			[nome, unidade_nova, produto_id],
		).fetchone()
		if conflito:
			raise ProdutoDuplicado(
				"Já existe produto canônico com o mesmo nome base e unidade"
			)
		sets = ["detalhe_unidade = ?", "atualizado_em = ?"]
		params: list[object] = [detalhe, agora_ms()]
		# Colunas da chave única só entram no UPDATE quando mudam
		if (nome, unidade_nova) != (atual.nome_base, atual.unidade):
			sets += ["nome_base = ?", "unidade = ?"]
			params += [nome, unidade_nova]
		params.append(produto_id)
		con.execute(f"UPDATE produtos_canonicos SET {', '.join(sets)} WHERE id = ?", params)
	return obter_produto_canonico(produto_id, db_path=db_path)


def obter_produto_canonico(
	produto_id: int, *, db_path: Path | str | None = None
) -> ProdutoCanonico:
	with conexao(db_path) as con:
		row = con.execute(
			"""
			SELECT id, nome_base, unidade, detalhe_unidade, criado_em, atualizado_em
			FROM produtos_canonicos
			WHERE id = ?
			""",
			[produto_id],
		).fetchone()
	if not row:
		raise RegistroNaoEncontrado("Produto canônico não encontrado")
	return _produto_de_row(row)


def listar_produtos_canonicos(*, db_path: Path | str | None = None) -> list[ProdutoCanonico]:
	with conexao(db_path) as con:
		rows = con.execute(
			"""
			SELECT id, nome_base, unidade, detalhe_unidade, criado_em, atualizado_em
			FROM produtos_canonicos
			ORDER BY id
			"""
		).fetchall()
	return [_produto_de_row(row) for row in rows]


def _produto_de_row(row: Sequence[Any]) -> ProdutoCanonico:
	return ProdutoCanonico(
		id=int(row[0]),
		nome_base=row[1],
		unidade=row[2],
		detalhe_unidade=row[3],
		criado_em=row[4],
		atualizado_em=row[5],
	)


def criar_regra(
	padrao: str,
	tipo_match: str,
	produto_alvo_id: int,
	*,
	usuario_id: str | None,
	sinonimos_unidade: Sequence[str] | None = None,
	prioridade: int = 0,
	observacoes: str | None = None,
	db_path: Path | str | None = None,
) -> RegraMapeamento:
	exigir_usuario(usuario_id)
	padrao_limpo = (padrao or "").strip()
	if not padrao_limpo:
		raise ValueError("O padrão da regra não pode ser vazio")
	_validar_tipo_match(tipo_match)
	obter_produto_canonico(produto_alvo_id, db_path=db_path)
	sinonimos = _normalizar_sinonimos(sinonimos_unidade)
	agora = agora_ms()
	with conexao(db_path) as con:
		row = con.execute(
			"""
			INSERT INTO regras_mapeamento (
				padrao, tipo_match, produto_alvo_id, sinonimos_unidade,
				ativo, prioridade, observacoes, criado_em, atualizado_em
			) VALUES (?, ?, ?, ?, TRUE, ?, ?, ?, ?)
			RETURNING id
			""",
			[
				padrao_limpo,
				tipo_match,
				produto_alvo_id,
				json.dumps(sinonimos, ensure_ascii=False) if sinonimos else None,
				prioridade,
				_limpar_texto_curto(observacoes),
				agora,
				agora,
			],
		).fetchone()
	if not row:
		raise RuntimeError("Não foi possível criar a regra")
	return RegraMapeamento(
		id=int(row[0]),
		padrao=padrao_limpo,
		tipo_match=tipo_match,
		produto_alvo_id=produto_alvo_id,
		sinonimos_unidade=sinonimos,
		ativo=True,
		prioridade=prioridade,
		observacoes=_limpar_texto_curto(observacoes),
	)


def atualizar_regra(
	regra_id: int,
	*,
	usuario_id: str | None,
	padrao: str | None = None,
	tipo_match: str | None = None,
	produto_alvo_id: int | None = None,
	sinonimos_unidade: Sequence[str] | None = None,
	ativo: bool | None = None,
	prioridade: int | None = None,
	observacoes: str | None = None,
	db_path: Path | str | None = None,
) -> None:
	exigir_usuario(usuario_id)
	sets: list[str] = ["atualizado_em = ?"]
	params: list[object] = [agora_ms()]
	if padrao is not None:
		padrao_limpo = padrao.strip()
		if not padrao_limpo:
			raise ValueError("O padrão da regra não pode ser vazio")
		sets.append("padrao = ?")
		params.append(padrao_limpo)
	if tipo_match is not None:
		_validar_tipo_match(tipo_match)
		sets.append("tipo_match = ?")
		params.append(tipo_match)
	if produto_alvo_id is not None:
		obter_produto_canonico(produto_alvo_id, db_path=db_path)
		sets.append("produto_alvo_id = ?")
		params.append(produto_alvo_id)
	if sinonimos_unidade is not None:
		sinonimos = _normalizar_sinonimos(sinonimos_unidade)
		sets.append("sinonimos_unidade = ?")
		params.append(json.dumps(sinonimos, ensure_ascii=False) if sinonimos else None)
	if ativo is not None:
		sets.append("ativo = ?")
		params.append(bool(ativo))
	if prioridade is not None:
		sets.append("prioridade = ?")
		params.append(int(prioridade))
	if observacoes is not None:
		sets.append("observacoes = ?")
		params.append(_limpar_texto_curto(observacoes))
	params.append(regra_id)
	with conexao(db_path) as con:
		row = con.execute(
			f"UPDATE regras_mapeamento SET {', '.join(sets)} WHERE id = ? RETURNING id",
			params,
		).fetchone()
	if not row:
		raise RegistroNaoEncontrado("Regra não encontrada")


def remover_regra(
	regra_id: int, *, usuario_id: str | None, db_path: Path | str | None = None
) -> None:
	exigir_usuario(usuario_id)
	with conexao(db_path) as con:
		con.execute("DELETE FROM regras_mapeamento WHERE id = ?", [regra_id])


def listar_regras(
	*, apenas_ativas: bool = False, db_path: Path | str | None = None
) -> list[RegraMapeamento]:
	"""Regras na ordem de avaliação: prioridade crescente, depois criação."""

	query = """
		SELECT id, padrao, tipo_match, produto_alvo_id, sinonimos_unidade,
			COALESCE(ativo, TRUE), COALESCE(prioridade, 0), observacoes
		FROM regras_mapeamento
	"""
	if apenas_ativas:
		query += " WHERE COALESCE(ativo, TRUE)"
	query += " ORDER BY COALESCE(prioridade, 0), id"
	with conexao(db_path) as con:
		rows = con.execute(query).fetchall()
	return [
		RegraMapeamento(
			id=int(row[0]),
			padrao=row[1],
			tipo_match=row[2],
			produto_alvo_id=int(row[3]),
			sinonimos_unidade=json.loads(row[4]) if row[4] else None,
			ativo=bool(row[5]),
			prioridade=int(row[6]),
			observacoes=row[7],
		)
		for row in rows
	]


def _validar_tipo_match(tipo_match: str) -> None:
	if tipo_match not in TIPOS_MATCH:
		raise ValueError(f"Tipo de match inválido: {tipo_match!r}")


def _normalizar_sinonimos(sinonimos: Sequence[str] | None) -> list[str] | None:
	if not sinonimos:
		return None
	limpos = [str(s).strip() for s in sinonimos if str(s).strip()]
	return limpos or None


# ---------------------------------------------------------------------------
# Logs de classificação
# ---------------------------------------------------------------------------


def registrar_log_classificacao(
	item: ItemNota, motivo: str, *, db_path: Path | str | None = None
) -> None:
	with conexao(db_path) as con:
		con.execute(
			"""
			INSERT INTO logs_classificacao (item_id, motivo, nome, unidade, quantidade, criado_em)
			VALUES (?, ?, ?, ?, ?, ?)
			""",
			[item.id, motivo, item.nome, item.unidade, item.quantidade, agora_ms()],
		)


def listar_logs_classificacao(
	*, item_id: int | None = None, limit: int = 100, db_path: Path | str | None = None
) -> list[LogClassificacao]:
	query = "SELECT id, item_id, motivo, nome, unidade, quantidade, criado_em FROM logs_classificacao"
	params: list[object] = []
	if item_id is not None:
		query += " WHERE item_id = ?"
		params.append(item_id)
	query += " ORDER BY id DESC LIMIT ?"
	params.append(limit)
	with conexao(db_path) as con:
		rows = con.execute(query, params).fetchall()
	return [
		LogClassificacao(
			id=int(row[0]),
			item_id=int(row[1]),
			motivo=row[2],
			nome=row[3],
			unidade=row[4],
			quantidade=row[5],
			criado_em=row[6],
		)
		for row in rows
	]


def _valor_para_coluna(valor: Decimal | None) -> str | None:
	"""Texto aceito pelas colunas DECIMAL(38, 10); fora da faixa vira NULL."""

	if valor is None or not valor.is_finite() or abs(valor) >= LIMITE_NUMERICO:
		return None
	with localcontext() as ctx:
		ctx.prec = 50
		return format(valor.quantize(_ESCALA_COLUNA), "f")


def _para_decimal(valor: Any) -> Decimal | None:
	if valor is None:
		return None
	if isinstance(valor, Decimal):
		return valor
	try:
		return Decimal(str(valor))
	except ArithmeticError:
		return None


def _limpar_texto_curto(texto: Any) -> str | None:
	if not texto:
		return None
	s = str(texto).strip()
	return s if s else None
