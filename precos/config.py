"""Configuração da aplicação lida de variáveis de ambiente (e `.env`)."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_USER_AGENT = (
	"Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
	"(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

_ENV_LOADED = False
_CONFIG_CACHE: Optional["Configuracao"] = None


@dataclass(frozen=True, slots=True)
class Configuracao:
	db_path: Path
	log_dir: Path
	timeout_http: float = 30.0
	user_agent: str = DEFAULT_USER_AGENT
	max_coletas_simultaneas: int = 4
	tamanho_lote_padrao: int = 200
	dir_html_bruto: Optional[Path] = None
	usuario_padrao: str = "local"


def _ensure_env() -> None:
	global _ENV_LOADED
	if _ENV_LOADED:
		return
	env_path = PROJECT_ROOT / ".env"
	if env_path.exists():
		load_dotenv(dotenv_path=str(env_path), override=False)
	else:
		load_dotenv(override=False)
	_ENV_LOADED = True


def _ler_float(nome: str, padrao: float) -> float:
	valor = os.getenv(nome)
	if not valor:
		return padrao
	try:
		convertido = float(valor.replace(",", "."))
	except ValueError:
		return padrao
	return convertido if convertido > 0 else padrao


def _ler_int(nome: str, padrao: int) -> int:
	valor = os.getenv(nome)
	if not valor:
		return padrao
	try:
		convertido = int(valor)
	except ValueError:
		return padrao
	return convertido if convertido > 0 else padrao


def _ler_caminho(nome: str) -> Optional[Path]:
	valor = (os.getenv(nome) or "").strip()
	return Path(valor) if valor else None


def carregar_configuracao(*, recarregar: bool = False) -> Configuracao:
	"""Retorna a configuração atual, lendo o ambiente apenas uma vez.

	Use `recarregar=True` para reler as variáveis (útil em testes que alteram
	o ambiente com `monkeypatch`).
	"""

	global _CONFIG_CACHE
	if _CONFIG_CACHE is not None and not recarregar:
		return _CONFIG_CACHE

	_ensure_env()
	_CONFIG_CACHE = Configuracao(
		db_path=_ler_caminho("PRECOS_DB_PATH") or PROJECT_ROOT / "data" / "precos.duckdb",
		log_dir=_ler_caminho("PRECOS_LOG_DIR") or PROJECT_ROOT / "logs",
		timeout_http=_ler_float("PRECOS_HTTP_TIMEOUT", 30.0),
		user_agent=(os.getenv("PRECOS_USER_AGENT") or "").strip() or DEFAULT_USER_AGENT,
		max_coletas_simultaneas=_ler_int("PRECOS_MAX_COLETAS", 4),
		tamanho_lote_padrao=_ler_int("PRECOS_TAMANHO_LOTE", 200),
		dir_html_bruto=_ler_caminho("PRECOS_DIR_HTML"),
		usuario_padrao=(os.getenv("PRECOS_USUARIO") or "").strip() or "local",
	)
	return _CONFIG_CACHE
