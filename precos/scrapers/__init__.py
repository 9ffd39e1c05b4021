"""Módulo responsável pela extração de itens das páginas públicas de NFC-e."""

from .nfce import ItemBruto, ResultadoExtracao, baixar_html, extrair_nota_html, validar_url

__all__ = [
	"ItemBruto",
	"ResultadoExtracao",
	"baixar_html",
	"extrair_nota_html",
	"validar_url",
]
