from datetime import datetime

import pytest

from precos.classifiers import atribuir_produto_item, sincronizar_itens
from precos.database import (
    ProdutoDuplicado,
    RegistroNaoEncontrado,
    atualizar_produto_canonico,
    atualizar_regra,
    carregar_nota,
    criar_nota,
    criar_produto_canonico,
    criar_regra,
    exigir_usuario,
    inicializar_banco,
    listar_itens_com_detalhes,
    listar_itens_nota,
    listar_notas,
    listar_notas_pendentes,
    listar_produtos_canonicos,
    listar_regras,
    marcar_nota_concluida,
    marcar_nota_erro,
    marcar_nota_pendente,
    marcar_nota_processando,
    obter_nota,
    remover_nota,
    remover_regra,
)
from precos.scrapers.nfce import ResultadoExtracao

from conftest import OUTRO_USUARIO, URL_NFCE, USUARIO


def test_inicializar_banco_cria_tabelas(db_path):
    conn = inicializar_banco(db_path=db_path)
    try:
        tabelas = {row[0] for row in conn.execute("SHOW TABLES").fetchall()}
    finally:
        conn.close()

    assert {
        "notas",
        "itens_nota",
        "produtos_canonicos",
        "regras_mapeamento",
        "logs_classificacao",
    } <= tabelas


def test_exigir_usuario():
    assert exigir_usuario(" ana ") == "ana"
    with pytest.raises(PermissionError, match="Não autenticado"):
        exigir_usuario(None)
    with pytest.raises(PermissionError):
        exigir_usuario("")


def test_nota_de_outro_usuario_nao_e_visivel(db_path):
    nota_id = criar_nota(URL_NFCE, USUARIO, db_path=db_path)

    assert obter_nota(nota_id, usuario_id=USUARIO, db_path=db_path).url == URL_NFCE
    with pytest.raises(RegistroNaoEncontrado):
        obter_nota(nota_id, usuario_id=OUTRO_USUARIO, db_path=db_path)
    with pytest.raises(RegistroNaoEncontrado):
        obter_nota(12345, usuario_id=USUARIO, db_path=db_path)
    assert listar_notas(OUTRO_USUARIO, db_path=db_path) == []


def test_listagens_de_notas(db_path):
    primeira = criar_nota(URL_NFCE, USUARIO, db_path=db_path)
    segunda = criar_nota(URL_NFCE, USUARIO, db_path=db_path)
    alheia = criar_nota(URL_NFCE, OUTRO_USUARIO, db_path=db_path)
    marcar_nota_processando(primeira, db_path=db_path)

    assert [nota.id for nota in listar_notas(USUARIO, db_path=db_path)] == [segunda, primeira]
    assert [nota.id for nota in listar_notas_pendentes(usuario_id=USUARIO, db_path=db_path)] == [segunda]
    assert [nota.id for nota in listar_notas_pendentes(db_path=db_path)] == [segunda, alheia]


def test_transicoes_limpam_resultado_anterior(db_path, nota_concluida):
    nota_id = nota_concluida([("CUCA", "1", "UN", "18,00", "18,00")], emissao_ts=1_700_000_000_000)
    concluida = carregar_nota(nota_id, db_path=db_path)
    assert concluida.status == "done"
    assert concluida.emissao_ts == 1_700_000_000_000

    marcar_nota_pendente(nota_id, db_path=db_path)
    pendente = carregar_nota(nota_id, db_path=db_path)
    assert pendente.itens_extraidos == []
    assert pendente.valor_total is None
    assert pendente.emitente is None

    assert not marcar_nota_erro(nota_id, "antes da coleta", db_path=db_path)
    assert carregar_nota(nota_id, db_path=db_path).status == "pending"
    assert marcar_nota_processando(nota_id, db_path=db_path)
    marcar_nota_erro(nota_id, "", db_path=db_path)
    com_erro = carregar_nota(nota_id, db_path=db_path)
    assert com_erro.status == "error"
    assert com_erro.mensagem_erro == "Erro desconhecido"


def test_nota_concluida_precisa_de_itens(db_path):
    nota_id = criar_nota(URL_NFCE, USUARIO, db_path=db_path)

    with pytest.raises(ValueError):
        marcar_nota_concluida(nota_id, ResultadoExtracao(), db_path=db_path)
    assert carregar_nota(nota_id, db_path=db_path).status == "pending"


def test_remover_nota_apaga_itens(db_path, nota_concluida):
    nota_id = nota_concluida([("CUCA", "1", "UN", "18,00", "18,00")])
    sincronizar_itens(usuario_id=USUARIO, db_path=db_path)

    with pytest.raises(RegistroNaoEncontrado):
        remover_nota(nota_id, usuario_id=OUTRO_USUARIO, db_path=db_path)
    remover_nota(nota_id, usuario_id=USUARIO, db_path=db_path)

    assert carregar_nota(nota_id, db_path=db_path) is None
    assert listar_itens_nota(USUARIO, db_path=db_path) == []


def test_produto_canonico_unico_por_nome_e_unidade(db_path):
    produto = criar_produto_canonico("  Arroz branco ", "PACK", "5 kg", usuario_id=USUARIO, db_path=db_path)

    assert produto.nome_base == "Arroz branco"
    assert produto.detalhe_unidade == "5 kg"
    with pytest.raises(ProdutoDuplicado):
        criar_produto_canonico("Arroz branco", " PACK ", usuario_id=USUARIO, db_path=db_path)
    criar_produto_canonico("Arroz branco", "KG", usuario_id=USUARIO, db_path=db_path)
    assert len(listar_produtos_canonicos(db_path=db_path)) == 2


def test_produto_canonico_exige_nome_e_unidade(db_path):
    with pytest.raises(ValueError):
        criar_produto_canonico("   ", "KG", usuario_id=USUARIO, db_path=db_path)
    with pytest.raises(ValueError):
        criar_produto_canonico("Feijão", "", usuario_id=USUARIO, db_path=db_path)


def test_atualizar_produto_canonico(db_path):
    arroz = criar_produto_canonico("Arroz", "PACK", usuario_id=USUARIO, db_path=db_path)
    feijao = criar_produto_canonico("Feijão", "PACK", usuario_id=USUARIO, db_path=db_path)

    atualizado = atualizar_produto_canonico(arroz.id, detalhe_unidade="1 kg", usuario_id=USUARIO, db_path=db_path)
    assert atualizado.detalhe_unidade == "1 kg"
    assert atualizado.nome_base == "Arroz"

    with pytest.raises(ProdutoDuplicado):
        atualizar_produto_canonico(feijao.id, nome_base="Arroz", usuario_id=USUARIO, db_path=db_path)
    with pytest.raises(RegistroNaoEncontrado):
        atualizar_produto_canonico(999, nome_base="X", usuario_id=USUARIO, db_path=db_path)


def test_regras_ordenadas_por_prioridade_e_criacao(db_path):
    produto = criar_produto_canonico("Leite", "UNIT", usuario_id=USUARIO, db_path=db_path)
    primeira = criar_regra("leite", "contains", produto.id, usuario_id=USUARIO, db_path=db_path)
    segunda = criar_regra("uht", "contains", produto.id, usuario_id=USUARIO, db_path=db_path)
    urgente = criar_regra("^leite", "regex", produto.id, prioridade=-10, usuario_id=USUARIO, db_path=db_path)
    atualizar_regra(segunda.id, ativo=False, usuario_id=USUARIO, db_path=db_path)

    assert [r.id for r in listar_regras(db_path=db_path)] == [urgente.id, primeira.id, segunda.id]
    assert [r.id for r in listar_regras(apenas_ativas=True, db_path=db_path)] == [urgente.id, primeira.id]

    remover_regra(urgente.id, usuario_id=USUARIO, db_path=db_path)
    assert [r.id for r in listar_regras(db_path=db_path)] == [primeira.id, segunda.id]


def test_regra_valida_entrada(db_path):
    produto = criar_produto_canonico("Leite", "UNIT", usuario_id=USUARIO, db_path=db_path)

    with pytest.raises(ValueError):
        criar_regra("leite", "fuzzy", produto.id, usuario_id=USUARIO, db_path=db_path)
    with pytest.raises(ValueError):
        criar_regra("  ", "exact", produto.id, usuario_id=USUARIO, db_path=db_path)
    with pytest.raises(RegistroNaoEncontrado):
        criar_regra("leite", "exact", 999, usuario_id=USUARIO, db_path=db_path)
    with pytest.raises(RegistroNaoEncontrado):
        atualizar_regra(999, ativo=False, usuario_id=USUARIO, db_path=db_path)


def test_catalogo_e_regras_exigem_usuario(db_path):
    produto = criar_produto_canonico("Leite", "UNIT", usuario_id=USUARIO, db_path=db_path)
    regra = criar_regra("leite", "contains", produto.id, usuario_id=USUARIO, db_path=db_path)

    with pytest.raises(PermissionError):
        criar_produto_canonico("Arroz", "PACK", usuario_id=None, db_path=db_path)
    with pytest.raises(PermissionError):
        atualizar_produto_canonico(produto.id, nome_base="Leite UHT", usuario_id=None, db_path=db_path)
    with pytest.raises(PermissionError):
        criar_regra("uht", "contains", produto.id, usuario_id=None, db_path=db_path)
    with pytest.raises(PermissionError):
        atualizar_regra(regra.id, ativo=False, usuario_id="", db_path=db_path)
    with pytest.raises(PermissionError):
        remover_regra(regra.id, usuario_id=None, db_path=db_path)

    assert [p.nome_base for p in listar_produtos_canonicos(db_path=db_path)] == ["Leite"]
    assert [(r.id, r.ativo) for r in listar_regras(db_path=db_path)] == [(regra.id, True)]


def test_sinonimos_vazios_viram_sem_restricao(db_path):
    produto = criar_produto_canonico("Leite", "UNIT", usuario_id=USUARIO, db_path=db_path)
    criar_regra("leite", "contains", produto.id, sinonimos_unidade=[], usuario_id=USUARIO, db_path=db_path)
    criar_regra("uht", "contains", produto.id, sinonimos_unidade=[" ", ""], usuario_id=USUARIO, db_path=db_path)
    criar_regra("integral", "contains", produto.id, sinonimos_unidade=[" L ", "Liter"], usuario_id=USUARIO, db_path=db_path)

    sinonimos = [r.sinonimos_unidade for r in listar_regras(db_path=db_path)]

    assert sinonimos == [None, None, ["L", "Liter"]]


def test_itens_com_detalhes_e_filtro_por_mes(db_path, nota_concluida):
    janeiro = int(datetime(2025, 1, 15, 10, 0).timestamp() * 1000)
    fevereiro = int(datetime(2025, 2, 15, 10, 0).timestamp() * 1000)
    produto = criar_produto_canonico("Cuca", "UNIT", usuario_id=USUARIO, db_path=db_path)
    nota_concluida([("CUCA", "1", "UN", "18,00", "18,00")], emissao_ts=janeiro)
    nota_concluida([("PAO", "1", "KG", "14,90", "14,90")], emissao_ts=fevereiro, emitente=None)
    sincronizar_itens(usuario_id=USUARIO, db_path=db_path)
    cuca = next(item for item in listar_itens_nota(USUARIO, db_path=db_path) if item.nome == "CUCA")
    atribuir_produto_item(cuca.id, produto.id, usuario_id=USUARIO, db_path=db_path)

    todos = listar_itens_com_detalhes(USUARIO, db_path=db_path)
    assert [d.item.nome for d in todos] == ["PAO", "CUCA"]
    assert todos[1].produto.nome_base == "Cuca"
    assert todos[1].nota_valor_total_texto == "R$ 18,00"
    assert todos[0].produto is None

    so_janeiro = listar_itens_com_detalhes(USUARIO, mes=1, ano=2025, db_path=db_path)
    assert [d.item.nome for d in so_janeiro] == ["CUCA"]
    assert listar_itens_com_detalhes(OUTRO_USUARIO, db_path=db_path) == []
