import os
import sys
import logging

import streamlit as st
import streamlit.components.v1 as components

# Ensure project root is on sys.path so that 'graph_rag' package can be imported
CURRENT_DIR = os.path.dirname(os.path.abspath(__file__))
PROJECT_ROOT = os.path.dirname(CURRENT_DIR)
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

# Basic logging configuration so everything пишется в терминал
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

from graph_rag.config import get_settings
from graph_rag.errors import (
    AlreadyRunning,
    GenerationError,
    ModelError,
    NoContextAvailable,
    NotADirectory,
    NotFound,
)
from graph_rag.models import JobState
from graph_rag.runtime import BackgroundLoop
from graph_rag.service import GraphRagService
from graph_rag.visualize import build_graph_html, entities_table


settings = get_settings()


@st.cache_resource
def get_runtime():
    """One event loop and one service per Streamlit server process."""
    loop = BackgroundLoop().start()
    service = GraphRagService.from_settings(settings)
    loop.run(service.initialize())
    return loop, service


st.set_page_config(page_title="Graph-RAG. Выявление сущностей и связей.", layout="wide")
loop, service = get_runtime()

st.title("Graph-RAG. Выявление сущностей и связей.")

st.sidebar.header("Settings")
st.sidebar.write(f"Model provider: **{settings.model_provider}**")
st.sidebar.write(f"LLM: `{settings.llm_model_name}`")
st.sidebar.write(f"Graph backend: **{settings.graph_backend}**")
st.sidebar.write(f"Chunk size / overlap: {settings.chunk_size} / {settings.chunk_overlap}")


st.subheader("1. Индексация каталога")
directory = st.text_input("Путь к каталогу с документами", value=st.session_state.get("directory", ""))

if st.button("Индексировать каталог", disabled=not directory):
    st.session_state["directory"] = directory
    try:
        loop.run(service.start_ingestion(directory))
        logger.info("Ingestion of %s requested from UI", directory)
    except (NotFound, NotADirectory) as e:
        st.error(f"Неверный путь: {e}")
    except AlreadyRunning:
        st.warning("Индексация уже выполняется. Дождитесь её завершения.")


@st.fragment(run_every=1.0)
def job_panel() -> None:
    status = service.job_status()
    if status.state is JobState.IDLE:
        st.caption("Индексация ещё не запускалась.")
        return

    st.progress(status.progress, text=status.message)
    if status.state is JobState.COMPLETED:
        st.success(status.message)
    elif status.state is JobState.FAILED:
        st.error(status.message)

    summary = status.summary
    if summary and summary.skipped_chunks:
        st.warning(f"Пропущено чанков: {summary.chunks_skipped}")
        st.table(
            [{"file": c.path, "chunk": c.index, "reason": c.reason} for c in summary.skipped_chunks]
        )


job_panel()


st.subheader("2. Чат")

if "chat_history" not in st.session_state:
    st.session_state["chat_history"] = []

for msg in st.session_state["chat_history"]:
    with st.chat_message(msg["role"]):
        st.markdown(msg["content"])
        if msg.get("key_entities"):
            st.caption("Ключевые сущности: " + ", ".join(msg["key_entities"]))


if user_input := st.chat_input("Задайте вопрос..."):
    st.session_state["chat_history"].append({"role": "user", "content": user_input})
    with st.chat_message("user"):
        st.markdown(user_input)

    key_entities = []
    with st.chat_message("assistant"):
        with st.spinner("Генерирую ответ..."):
            try:
                result = loop.run(service.query(user_input))
                answer, key_entities = result.answer, result.key_entities
            except NoContextAvailable:
                answer = "В загруженных документах нет информации по этому вопросу."
            except (GenerationError, ModelError) as e:
                logger.exception("Query failed")
                answer = f"❌ Не удалось получить ответ: {e}"
        st.markdown(answer)
        if key_entities:
            st.caption("Ключевые сущности: " + ", ".join(key_entities))

    st.session_state["chat_history"].append(
        {"role": "assistant", "content": answer, "key_entities": key_entities}
    )
    st.session_state["highlight"] = key_entities


st.markdown("---")
st.subheader("3. Граф знаний")

if st.button("Показать/обновить граф знаний"):
    with st.spinner("Загружаю граф из хранилища..."):
        snapshot = loop.run(service.graph_snapshot())
        entities = loop.run(service.list_entities())

    if not snapshot.nodes:
        st.warning("Граф пуст. Сначала проиндексируйте каталог с документами.")
    else:
        st.markdown(f"Сущностей: {len(snapshot.nodes)}, связей: {len(snapshot.edges)}.")
        components.html(
            build_graph_html(snapshot, highlight=st.session_state.get("highlight")),
            height=620,
        )
        with st.expander("Список сущностей"):
            st.dataframe(entities_table(entities), use_container_width=True)
