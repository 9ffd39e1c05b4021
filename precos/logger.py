import logging
import sys
from logging.handlers import RotatingFileHandler

from precos.config import carregar_configuracao

LOGGER_RAIZ = "precos"
ARQUIVO_LOG = "app.log"
FORMATO = "%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s"


def _configurar_raiz() -> logging.Logger:
    raiz = logging.getLogger(LOGGER_RAIZ)
    if raiz.handlers:
        return raiz

    log_dir = carregar_configuracao().log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    raiz.setLevel(logging.DEBUG)
    formatter = logging.Formatter(FORMATO)

    # Arquivo rotativo com tudo, inclusive as linhas descartadas na extração
    file_handler = RotatingFileHandler(
        log_dir / ARQUIVO_LOG, maxBytes=5*1024*1024, backupCount=3, encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(formatter)

    raiz.addHandler(file_handler)
    raiz.addHandler(console_handler)
    return raiz


def setup_logging(name: str) -> logging.Logger:
    """Retorna o logger `precos.<name>`.

    Os handlers ficam no logger `precos` e são criados uma única vez, de modo
    que as threads do pool de coleta escrevem no mesmo arquivo.
    """

    _configurar_raiz()
    return logging.getLogger(f"{LOGGER_RAIZ}.{name}")
