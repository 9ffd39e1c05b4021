from pathlib import Path

import pytest

from precos.config import DEFAULT_USER_AGENT, PROJECT_ROOT, carregar_configuracao

VARIAVEIS = (
    "PRECOS_DB_PATH",
    "PRECOS_LOG_DIR",
    "PRECOS_HTTP_TIMEOUT",
    "PRECOS_USER_AGENT",
    "PRECOS_MAX_COLETAS",
    "PRECOS_TAMANHO_LOTE",
    "PRECOS_DIR_HTML",
    "PRECOS_USUARIO",
)


@pytest.fixture
def ambiente_limpo(monkeypatch):
    for nome in VARIAVEIS:
        monkeypatch.delenv(nome, raising=False)
    yield monkeypatch
    monkeypatch.undo()
    carregar_configuracao(recarregar=True)


def test_valores_padrao(ambiente_limpo):
    config = carregar_configuracao(recarregar=True)

    assert config.db_path == PROJECT_ROOT / "data" / "precos.duckdb"
    assert config.log_dir == PROJECT_ROOT / "logs"
    assert config.timeout_http == 30.0
    assert config.user_agent == DEFAULT_USER_AGENT
    assert config.max_coletas_simultaneas == 4
    assert config.tamanho_lote_padrao == 200
    assert config.dir_html_bruto is None
    assert config.usuario_padrao == "local"


def test_variaveis_de_ambiente(ambiente_limpo, tmp_path):
    ambiente_limpo.setenv("PRECOS_DB_PATH", str(tmp_path / "x.duckdb"))
    ambiente_limpo.setenv("PRECOS_HTTP_TIMEOUT", "12,5")
    ambiente_limpo.setenv("PRECOS_MAX_COLETAS", "8")
    ambiente_limpo.setenv("PRECOS_DIR_HTML", str(tmp_path / "html"))
    ambiente_limpo.setenv("PRECOS_USUARIO", " maria ")

    config = carregar_configuracao(recarregar=True)

    assert config.db_path == Path(tmp_path / "x.duckdb")
    assert config.timeout_http == 12.5
    assert config.max_coletas_simultaneas == 8
    assert config.dir_html_bruto == tmp_path / "html"
    assert config.usuario_padrao == "maria"


def test_numeros_invalidos_usam_padrao(ambiente_limpo):
    ambiente_limpo.setenv("PRECOS_HTTP_TIMEOUT", "rápido")
    ambiente_limpo.setenv("PRECOS_MAX_COLETAS", "0")
    ambiente_limpo.setenv("PRECOS_TAMANHO_LOTE", "-10")

    config = carregar_configuracao(recarregar=True)

    assert config.timeout_http == 30.0
    assert config.max_coletas_simultaneas == 4
    assert config.tamanho_lote_padrao == 200


def test_configuracao_em_cache(ambiente_limpo):
    primeira = carregar_configuracao(recarregar=True)
    ambiente_limpo.setenv("PRECOS_USUARIO", "outra")

    assert carregar_configuracao() is primeira
    assert carregar_configuracao(recarregar=True).usuario_padrao == "outra"
