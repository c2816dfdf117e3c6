import logging
from typing import Iterable, Optional, Sequence

from pyvis.network import Network

from .models import EntitySummary, GraphSnapshot


logger = logging.getLogger(__name__)


def build_graph_html(
    snapshot: GraphSnapshot,
    highlight: Optional[Iterable[str]] = None,
    height: str = "600px",
) -> str:
    """
    Build an interactive HTML graph using pyvis from a graph snapshot.

    ``highlight`` takes entity names (e.g. the key entities of an answer);
    matching nodes are drawn larger.
    """
    highlighted = {name.casefold() for name in (highlight or [])}

    net = Network(height=height, width="100%", directed=True)
    net.barnes_hut()

    node_ids = set()
    for node in snapshot.nodes:
        node_id = node.get("id")
        label = node.get("label") or node_id
        group = node.get("group") or "Other"
        size = 25 if label.casefold() in highlighted else 12
        net.add_node(node_id, label=label, title=f"{label} ({group})", group=group, size=size)
        node_ids.add(node_id)

    for edge in snapshot.edges:
        source = edge.get("source")
        target = edge.get("target")
        # pyvis падает на рёбрах к отсутствующим узлам
        if source not in node_ids or target not in node_ids:
            continue
        etype = edge.get("type", "")
        net.add_edge(source, target, label=etype, title=etype)

    logger.debug("Rendered graph with %d node(s) and %d edge(s)", len(snapshot.nodes), len(snapshot.edges))
    # Возвращаем HTML как строку, без сохранения на диск.
    return net.generate_html()


def entities_table(entities: Sequence[EntitySummary]) -> list:
    """Rows for st.dataframe: one dict per entity."""
    return [
        {"Entity": e.name, "Type": e.type, "Mentions": e.mentions}
        for e in entities
    ]


__all__ = ["build_graph_html", "entities_table"]
