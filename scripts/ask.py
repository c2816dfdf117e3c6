import asyncio
import logging
import sys
from pathlib import Path

# Ensure project root is on sys.path so that 'graph_rag' package can be imported
CURRENT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = CURRENT_DIR.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from graph_rag.config import get_settings
from graph_rag.errors import GenerationError, ModelError, NoContextAvailable
from graph_rag.service import GraphRagService


async def _ask(question: str) -> int:
    settings = get_settings()
    if settings.uses_memory_store:
        # In-process store: nothing ingested by another process is visible here
        print(
            "ERROR: GRAPH_BACKEND=memory keeps the graph inside the process that ran "
            "the ingestion, so a separate ask.py run has no knowledge to query. "
            "Use GRAPH_BACKEND=neo4j or ask through the Streamlit UI."
        )
        return 1

    service = GraphRagService.from_settings(settings)
    try:
        result = await service.query(question)
    except NoContextAvailable:
        print("No stored knowledge matches this question.")
        return 2
    except (GenerationError, ModelError) as e:
        print(f"ERROR: {e}")
        return 1
    finally:
        await service.close()

    print("\n=== Answer ===")
    print(result.answer)
    if result.key_entities:
        print("\nKey entities: " + ", ".join(result.key_entities))
    return 0


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,
    )

    if len(sys.argv) < 2:
        print('Usage: python scripts/ask.py "<question>"')
        sys.exit(1)

    question = " ".join(sys.argv[1:])
    sys.exit(asyncio.run(_ask(question)))


if __name__ == "__main__":
    main()
