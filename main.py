from __future__ import annotations

import traceback
from dataclasses import asdict
from datetime import datetime

import pandas as pd
import streamlit as st

from precos.analise import comparar_precos_lojas, medias_mensais, resumo_nao_classificados, tendencia_precos
from precos.classifiers import classificar_lote, sincronizar_itens
from precos.coletor import despachar_pendentes, enviar_url, reenviar_nota
from precos.config import carregar_configuracao
from precos.database import (
	TIPOS_MATCH,
	ProdutoDuplicado,
	criar_produto_canonico,
	criar_regra,
	inicializar_banco,
	listar_notas,
	listar_produtos_canonicos,
	listar_regras,
)
from precos.logger import setup_logging

logger = setup_logging("main")


def _render_notas(usuario: str) -> None:
	st.header("Notas")
	with st.form("nova_nota", clear_on_submit=True):
		url = st.text_input("URL da NFC-e")
		if st.form_submit_button("Adicionar") and url:
			try:
				nota_id = enviar_url(url, usuario_id=usuario)
				st.success(f"Nota {nota_id} adicionada como pendente.")
			except ValueError as exc:
				st.error(str(exc))

	if st.button("Processar pendentes"):
		total = despachar_pendentes(usuario_id=usuario)
		st.info(f"Processamento iniciado para {total} nota(s). Atualize a página em instantes.")

	notas = listar_notas(usuario)
	if not notas:
		st.info("Nenhuma nota cadastrada ainda.")
		return
	st.dataframe(
		pd.DataFrame(
			[
				{
					"id": nota.id,
					"status": nota.status,
					"emitente": nota.emitente or "—",
					"emissão": nota.emissao_texto or "—",
					"total": nota.valor_total_texto or "—",
					"itens": len(nota.itens_extraidos),
					"erro": nota.mensagem_erro or "",
				}
				for nota in notas
			]
		),
		hide_index=True,
	)
	reenviaveis = [nota.id for nota in notas if nota.status != "pending"]
	if reenviaveis:
		escolhida = st.selectbox("Reenviar nota", reenviaveis)
		if st.button("Reenviar"):
			try:
				reenviar_nota(escolhida, usuario_id=usuario)
				st.success(f"Nota {escolhida} voltou para pendente.")
			except ValueError as exc:
				st.warning(str(exc))


def _render_catalogo(usuario: str) -> None:
	st.header("Catálogo")
	with st.form("novo_produto", clear_on_submit=True):
		col1, col2, col3 = st.columns(3)
		nome_base = col1.text_input("Nome base")
		unidade = col2.selectbox("Unidade", ("KG", "UNIT", "BOX", "PACK"))
		detalhe = col3.text_input("Detalhe da unidade")
		if st.form_submit_button("Criar produto") and nome_base:
			try:
				criar_produto_canonico(nome_base, unidade, detalhe or None, usuario_id=usuario)
				st.success("Produto criado.")
			except ProdutoDuplicado as exc:
				st.error(str(exc))

	produtos = listar_produtos_canonicos()
	if produtos:
		with st.form("nova_regra", clear_on_submit=True):
			padrao = st.text_input("Padrão")
			tipo = st.selectbox("Tipo", TIPOS_MATCH)
			alvo = st.selectbox(
				"Produto", produtos, format_func=lambda p: f"{p.nome_base} ({p.unidade})"
			)
			sinonimos = st.text_input("Unidades aceitas (separadas por vírgula)")
			prioridade = st.number_input("Prioridade", value=0, step=1)
			if st.form_submit_button("Criar regra") and padrao:
				criar_regra(
					padrao,
					tipo,
					alvo.id,
					sinonimos_unidade=[s for s in sinonimos.split(",") if s.strip()],
					prioridade=int(prioridade),
					usuario_id=usuario,
				)
				st.success("Regra criada.")
		regras = listar_regras()
		if regras:
			st.dataframe(pd.DataFrame([asdict(regra) for regra in regras]), hide_index=True)

	col1, col2 = st.columns(2)
	if col1.button("Sincronizar itens"):
		resultado = sincronizar_itens(usuario_id=usuario)
		st.info(f"{resultado.inseridos} inseridos, {resultado.removidos} removidos.")
	if col2.button("Classificar lote"):
		resultado = classificar_lote(
			usuario_id=usuario, tamanho_lote=carregar_configuracao().tamanho_lote_padrao
		)
		st.info(
			f"{resultado.processados} processados, {resultado.classificados} classificados, "
			f"{resultado.falhas} sem regra."
		)

	resumo = resumo_nao_classificados(usuario_id=usuario)
	if resumo.total:
		st.subheader(f"{resumo.total} item(ns) sem produto")
		st.table(pd.DataFrame(resumo.tokens[:15], columns=["token", "ocorrências"]))


def _render_precos(usuario: str) -> None:
	st.header("Preços")
	produtos = listar_produtos_canonicos()
	if not produtos:
		st.info("Cadastre produtos canônicos para acompanhar preços.")
		return
	produto = st.selectbox("Produto", produtos, format_func=lambda p: f"{p.nome_base} ({p.unidade})")
	unidade = st.text_input("Unidade como aparece na nota", value="UN")
	agregacao = st.radio("Agregação", ("avg", "min", "max"), horizontal=True)

	diario = tendencia_precos(produto.id, unidade, usuario_id=usuario, agregacao=agregacao)
	if diario:
		st.line_chart(pd.DataFrame({"data": [p.chave for p in diario], "preço": [float(p.valor) for p in diario]}).set_index("data"))
	mensal = medias_mensais(produto.id, unidade, usuario_id=usuario, agregacao=agregacao)
	if mensal:
		st.bar_chart(pd.DataFrame({"mês": [p.chave for p in mensal], "preço": [float(p.valor) for p in mensal]}).set_index("mês"))
	lojas = comparar_precos_lojas(produto.id, unidade, usuario_id=usuario, agregacao=agregacao)
	if lojas:
		st.table(
			pd.DataFrame(
				[{"estabelecimento": l.emitente, "preço": float(l.valor), "amostras": l.amostras} for l in lojas]
			)
		)
	if not (diario or mensal or lojas):
		st.info("Nenhum item classificado para este produto e unidade.")


def main() -> None:
	try:
		logger.info("Iniciando aplicação de preços NFC-e")
		st.set_page_config(page_title="Preços NFC-e", layout="wide")

		if "banco_inicializado" not in st.session_state:
			try:
				inicializar_banco().close()
				st.session_state["banco_inicializado"] = True
			except Exception as e:
				logger.exception(f"Erro na inicialização do banco: {e}")
				st.error("Erro crítico ao iniciar banco de dados.")
				return

		usuario = carregar_configuracao().usuario_padrao
		st.sidebar.title("Navegação")
		st.sidebar.caption(f"Usuário: {usuario} | {datetime.now():%d/%m/%Y}")
		opcao = st.sidebar.radio("Selecione uma área", ("Notas", "Catálogo", "Preços"))

		if opcao == "Notas":
			_render_notas(usuario)
		elif opcao == "Catálogo":
			_render_catalogo(usuario)
		else:
			_render_precos(usuario)

	except Exception as e:
		logger.exception(f"Erro crítico na aplicação: {e}\n{traceback.format_exc()}")
		st.error(f"❌ Erro inesperado na aplicação: {e}")
		st.exception(e)


if __name__ == "__main__":
	main()
