from concurrent.futures import Executor, Future
from decimal import Decimal
from pathlib import Path

import httpx
import pytest

from precos.database import criar_nota, marcar_nota_concluida, marcar_nota_processando
from precos.normalizacao import formatar_moeda, parse_valor
from precos.scrapers.nfce import ItemBruto, ResultadoExtracao

FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"
USUARIO = "ana"
OUTRO_USUARIO = "bruno"
URL_NFCE = "https://www.sefaz.rs.gov.br/NFCE/NFCE-COM.aspx?p=43251012345678000190651350005430861685582449|2|1|1|ABC"


class ExecutorSincrono(Executor):
    """Executa cada tarefa na hora, para que o despacho seja determinístico."""

    def __init__(self):
        self.submetidas = 0

    def submit(self, fn, /, *args, **kwargs):
        self.submetidas += 1
        futuro = Future()
        try:
            futuro.set_result(fn(*args, **kwargs))
        except Exception as exc:
            futuro.set_exception(exc)
        return futuro


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "precos.duckdb"


@pytest.fixture
def executor_sincrono():
    return ExecutorSincrono()


@pytest.fixture
def html_nfce():
    return (FIXTURES_DIR / "nfce_rs.html").read_text(encoding="utf-8")


@pytest.fixture
def cliente_http():
    """Fábrica de `httpx.Client` com transporte simulado."""

    clientes = []

    def _criar(handler):
        cliente = httpx.Client(transport=httpx.MockTransport(handler))
        clientes.append(cliente)
        return cliente

    yield _criar
    for cliente in clientes:
        cliente.close()


@pytest.fixture
def nota_concluida(db_path):
    """Cria uma nota já em `done` com os itens informados como tuplas.

    Cada item é `(nome, quantidade, unidade, valor_unitario, valor_total)`.
    """

    def _criar(itens, *, usuario_id=USUARIO, emitente="MERCADO A", emissao_ts=None):
        nota_id = criar_nota(URL_NFCE, usuario_id, db_path=db_path)
        brutos = [ItemBruto(*item) for item in itens]
        total = sum((parse_valor(item.valor_total) for item in brutos), Decimal("0"))
        resultado = ResultadoExtracao(
            itens=brutos,
            emissao_ts=emissao_ts,
            emitente=emitente,
            valor_total=total,
            valor_total_texto=formatar_moeda(total),
        )
        marcar_nota_processando(nota_id, db_path=db_path)
        marcar_nota_concluida(nota_id, resultado, db_path=db_path)
        return nota_id

    return _criar
