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
from graph_rag.errors import GraphRagError
from graph_rag.models import JobState
from graph_rag.service import GraphRagService


async def _poll(service: GraphRagService, handle, interval: float = 2.0) -> None:
    # Печатаем прогресс, пока задача не завершится
    while not handle.done():
        status = service.job_status()
        print(f"  {status.progress:6.1%}  {status.message}")
        await asyncio.sleep(interval)


async def _ingest(directory: Path) -> int:
    settings = get_settings()
    service = GraphRagService.from_settings(settings)
    try:
        await service.initialize()
        handle = await service.start_ingestion(directory)
        await asyncio.gather(handle.wait(), _poll(service, handle))
        status = service.job_status()
    finally:
        await service.close()

    print(f"\n=== Ingestion {status.state.value} ===")
    print(status.message)
    summary = status.summary
    if summary and summary.skipped_chunks:
        print("Skipped chunks:")
        for chunk in summary.skipped_chunks:
            print(f"  - {chunk.path} #{chunk.index}: {chunk.reason}")
    return 0 if status.state is JobState.COMPLETED else 1


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        force=True,
    )
    logger = logging.getLogger(__name__)

    if len(sys.argv) < 2:
        print("Usage: python scripts/ingest_directory.py <directory>")
        sys.exit(1)

    directory = Path(sys.argv[1])
    logger.info("Ingesting directory %s", directory)
    try:
        code = asyncio.run(_ingest(directory))
    except GraphRagError as e:
        print(f"ERROR: {e}")
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
