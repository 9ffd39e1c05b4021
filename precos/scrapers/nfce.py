from dataclasses import asdict, dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Dict, List, Optional
import hashlib
import re

import httpx
from bs4 import BeautifulSoup, Tag

from precos.config import carregar_configuracao
from precos.logger import setup_logging
from precos.normalizacao import (
    formatar_moeda,
    limpar_numero,
    parse_data_hora,
    parse_valor,
)

logger = setup_logging("scrapers.nfce")

SoupNode = Tag | BeautifulSoup

CONTAINER_ITENS_ID = "tabResult"
PREFIXO_LINHA_ITEM = "Item"
CLASSES_CAMPOS = {
    "nome": "txtTit",
    "quantidade": "Rqtd",
    "unidade": "RUN",
    "valor_unitario": "RvlUnit",
    "valor_total": "valor",
}
# Posição de cada campo quando a linha é lida como células de tabela
POSICOES_CAMPOS = ("nome", "quantidade", "unidade", "valor_unitario", "valor_total")
MIN_CELULAS_POSICIONAIS = 5

_DEFAULT_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/avif,image/webp,*/*;q=0.8",
    "Accept-Language": "pt-BR,pt;q=0.9,en-US;q=0.8",
}
_ROTULO_RE = re.compile(r"^\s*[^:]{0,30}:\s*")
_EMISSAO_RE = re.compile(
    r"Emiss\S{1,2}o\s*:?\s*(\d{2}/\d{2}/\d{4}(?:\s+\d{2}:\d{2}(?::\d{2})?)?)",
    re.IGNORECASE,
)
_ROTULO_EMISSAO_RE = re.compile(r"Emiss\S{1,2}o", re.IGNORECASE)
_NIVEIS_ANCESTRAIS_EMISSAO = 4
_META_CHARSET_RE = re.compile(r"(<meta[^>]*charset\s*=\s*[\"']?)([^\s\"'>]+)([^>]*>)", re.IGNORECASE)
_META_HTTP_EQUIV_RE = re.compile(
    r"(<meta[^>]*http-equiv\s*=\s*[\"']?content-type[\"']?[^>]*content\s*=\s*[\"'][^\"']*charset=)([^\s\"'>]+)([^>]*>)",
    re.IGNORECASE,
)


@dataclass
class ItemBruto:
    """Linha de item como aparece na página, preservada em texto."""

    nome: str
    quantidade: str
    unidade: str
    valor_unitario: str
    valor_total: str

    def to_dict(self) -> Dict[str, str]:
        return asdict(self)

    @classmethod
    def from_dict(cls, dados: Dict[str, object]) -> "ItemBruto":
        return cls(
            nome=str(dados.get("nome") or ""),
            quantidade=str(dados.get("quantidade") or ""),
            unidade=str(dados.get("unidade") or ""),
            valor_unitario=str(dados.get("valor_unitario") or ""),
            valor_total=str(dados.get("valor_total") or ""),
        )


@dataclass
class ResultadoExtracao:
    itens: List[ItemBruto] = field(default_factory=list)
    emissao_ts: Optional[int] = None
    emissao_texto: Optional[str] = None
    emitente: Optional[str] = None
    valor_total: Optional[Decimal] = None
    valor_total_texto: Optional[str] = None
    erro: Optional[str] = None
    linhas_encontradas: int = 0

    @property
    def sucesso(self) -> bool:
        return bool(self.itens)


__all__ = [
    "validar_url",
    "baixar_html",
    "extrair_nota_html",
    "ItemBruto",
    "ResultadoExtracao",
]


def validar_url(url: str) -> bool:
    if not url:
        return False
    return "nfce" in url or "sefaz" in url


def baixar_html(
    url: str,
    *,
    client: Optional[httpx.Client] = None,
    timeout: Optional[float] = None,
    user_agent: Optional[str] = None,
    destino_html: Optional[Path] = None,
) -> str:
    """Faz um único GET na página da NFC-e e devolve o HTML decodificado.

    Erros de rede, timeout e respostas fora da faixa 2xx são propagados como
    `httpx.HTTPError` para que o coletor registre a falha na nota.
    """

    config = carregar_configuracao()
    request_headers = {
        **_DEFAULT_HEADERS,
        "User-Agent": user_agent or config.user_agent,
    }
    session = (
        client
        if client is not None
        else httpx.Client(
            timeout=timeout or config.timeout_http,
            headers=request_headers,
            follow_redirects=True,
        )
    )
    needs_close = client is None
    try:
        response = session.get(url, headers=request_headers)
        response.raise_for_status()
        html = _normalizar_html_response(response)
        pasta = destino_html or config.dir_html_bruto
        if pasta is not None:
            _persistir_html(url, html, pasta)
        logger.info(f"HTML baixado com sucesso de {url} ({len(html)} caracteres)")
        return html
    except httpx.HTTPError as e:
        logger.error(f"Erro HTTP ao baixar nota {url}: {e}")
        raise
    finally:
        if needs_close:
            session.close()


def _persistir_html(url: str, html: str, pasta: Path) -> Path:
    pasta.mkdir(parents=True, exist_ok=True)
    digest = hashlib.sha1(url.encode("utf-8")).hexdigest()[:16]
    arquivo = pasta / f"nfce_{digest}.html"
    arquivo.write_text(html, encoding="utf-8")
    return arquivo


def _normalizar_html_response(response: httpx.Response) -> str:
    """Decodifica corretamente HTML ISO-8859-1 e força meta charset para UTF-8.

    Os portais das SEFAZ costumam devolver páginas com meta charset=iso-8859-1.
    Se `response.text` usar utf-8 por engano, os caracteres acentuados
    corrompem (o rótulo "Emissão" vira "Emiss�o").
    """

    raw = response.content

    encoding = None
    content_type = response.headers.get("Content-Type", "")
    match = re.search(r"charset=([\w-]+)", content_type, re.IGNORECASE)
    if match:
        encoding = match.group(1)

    if not encoding:
        # Olha o HTML bruto (decodificado em latin-1 para evitar falhas) e tenta
        # achar a declaração de charset.
        snippet = raw[:4096].decode("latin-1", errors="ignore")
        meta_match = re.search(r"charset=[\"']?([\w-]+)", snippet, re.IGNORECASE)
        if meta_match:
            encoding = meta_match.group(1)

    if not encoding:
        encoding = "utf-8"

    encoding = encoding.lower()
    logger.debug(f"Charset detectado: {encoding}")

    try:
        html = raw.decode(encoding, errors="replace")
    except LookupError:
        logger.warning(f"Charset '{encoding}' inválido; usando iso-8859-1")
        html = raw.decode("iso-8859-1", errors="replace")

    atualizado = _META_CHARSET_RE.sub(r"\1utf-8\3", html)
    return _META_HTTP_EQUIV_RE.sub(r"\1utf-8\3", atualizado)


def extrair_nota_html(html: str) -> ResultadoExtracao:
    """Extrai itens e metadados da página pública de uma NFC-e.

    Estratégia em camadas, cada uma tentada só se a anterior não achar nada:

    1. container `#tabResult`; se ausente, pula para a camada 4;
    2. linhas `tr[id^=Item]` com spans de classe conhecida (txtTit, Rqtd,
       RUN, RvlUnit, valor), usando a célula da mesma posição quando o span
       estiver vazio;
    3. sem linhas identificadas, todas as linhas do container (`tbody tr`,
       senão `tr`) com a mesma leitura classe-ou-posição;
    4. sem container, qualquer tabela da página com linhas de 5+ células.
    """

    soup = BeautifulSoup(html or "", "html.parser")
    resultado = ResultadoExtracao()
    resultado.emitente = _parse_emitente(soup)
    resultado.emissao_texto, resultado.emissao_ts = _parse_emissao(soup)

    container = soup.find(id=CONTAINER_ITENS_ID)
    if isinstance(container, Tag):
        linhas = container.select(f"tr[id^={PREFIXO_LINHA_ITEM}]")
        linhas_identificadas = bool(linhas)
        if not linhas:
            linhas = container.select("tbody tr") or container.select("tr")
        resultado.linhas_encontradas = len(linhas)
        itens = [item for item in map(_extrair_linha_classes, linhas) if item]
        if not itens:
            if linhas_identificadas:
                resultado.erro = (
                    f"Nenhum item extraído: {len(linhas)} linha(s) {PREFIXO_LINHA_ITEM} "
                    "encontradas, mas com campos obrigatórios vazios (spans ausentes?)"
                )
            else:
                resultado.erro = (
                    f"Nenhum item extraído: container #{CONTAINER_ITENS_ID} encontrado, "
                    f"mas nenhuma linha no formato esperado ({len(linhas)} linha(s))"
                )
    else:
        linhas = soup.select("table tr")
        resultado.linhas_encontradas = len(linhas)
        itens = [item for item in map(_extrair_linha_posicional, linhas) if item]
        if not itens:
            resultado.erro = (
                f"Nenhum item extraído: container de itens não encontrado "
                f"(#{CONTAINER_ITENS_ID}); {len(linhas)} linha(s) de tabela analisadas"
            )

    if not itens:
        logger.warning(resultado.erro)
        return resultado

    resultado.itens = itens
    total = sum((parse_valor(item.valor_total) for item in itens), Decimal("0"))
    resultado.valor_total = total
    resultado.valor_total_texto = formatar_moeda(total)
    logger.info(f"Extração concluída: {len(itens)} itens, total {resultado.valor_total_texto}")
    return resultado


def _texto(tag: Optional[SoupNode]) -> str:
    if tag is None:
        return ""
    return tag.get_text(" ", strip=True).replace("\xa0", " ").strip()


def _extrair_linha_classes(linha: Tag) -> Optional[ItemBruto]:
    celulas = linha.find_all("td")
    campos: Dict[str, str] = {}
    for posicao, campo in enumerate(POSICOES_CAMPOS):
        valor = _texto(linha.select_one(f".{CLASSES_CAMPOS[campo]}"))
        if not valor and posicao < len(celulas):
            valor = _texto(celulas[posicao])
        campos[campo] = valor
    return _montar_item(campos)


def _extrair_linha_posicional(linha: Tag) -> Optional[ItemBruto]:
    celulas = linha.find_all("td")
    if len(celulas) < MIN_CELULAS_POSICIONAIS:
        return None
    campos = {campo: _texto(celulas[posicao]) for posicao, campo in enumerate(POSICOES_CAMPOS)}
    return _montar_item(campos)


def _montar_item(campos: Dict[str, str]) -> Optional[ItemBruto]:
    nome = campos.get("nome", "").strip()
    quantidade = limpar_numero(campos.get("quantidade"))
    valor_unitario = limpar_numero(campos.get("valor_unitario"))
    if not nome or not quantidade or not valor_unitario:
        logger.debug(f"Linha descartada por campos obrigatórios vazios: {campos}")
        return None
    valor_total = campos.get("valor_total", "").strip()
    return ItemBruto(
        nome=nome,
        quantidade=quantidade,
        unidade=_limpar_rotulo(campos.get("unidade")),
        valor_unitario=valor_unitario,
        valor_total=limpar_numero(valor_total) if valor_total else "",
    )


def _limpar_rotulo(texto: Optional[str]) -> str:
    """Remove prefixos como `UN:` de `"UN: KG"`."""

    if not texto:
        return ""
    return _ROTULO_RE.sub("", texto, count=1).strip()


def _parse_emitente(soup: BeautifulSoup) -> Optional[str]:
    for seletor in ("#u20", ".txtTopo", "td.NFCCabecalho_SubTitulo"):
        nome = _texto(soup.select_one(seletor))
        if nome:
            return nome
    return None


def _parse_emissao(soup: BeautifulSoup) -> tuple[Optional[str], Optional[int]]:
    for trecho in soup.find_all(string=_ROTULO_EMISSAO_RE):
        elemento = trecho.parent
        for _ in range(_NIVEIS_ANCESTRAIS_EMISSAO):
            if elemento is None:
                break
            match = _EMISSAO_RE.search(elemento.get_text(" ", strip=True))
            if match:
                texto = match.group(1).strip()
                return texto, parse_data_hora(texto)
            elemento = elemento.parent

    match = _EMISSAO_RE.search(soup.get_text(" ", strip=True))
    if match:
        texto = match.group(1).strip()
        return texto, parse_data_hora(texto)
    return None, None
