"""In-process queue running document processing outside the request."""
import asyncio
from typing import List, Optional, Set, Tuple

from docuchat.db.repository import Repository
from docuchat.exceptions import NotFoundError
from docuchat.services.processing_service import DocumentProcessingService
from docuchat.utils.logger import logger


class ProcessingQueue:
    """
    Worker pool draining queued document ids.

    A document id is held at most once, whether waiting or running. The
    document row keeps its ``pending``/``processing`` status until a
    worker finishes, so ``recover`` can requeue work lost with the process.
    """

    def __init__(self, processing_service: DocumentProcessingService, workers: int = 2):
        self.processing_service = processing_service
        self.workers = max(1, workers)
        self._queue: "asyncio.Queue[Tuple[str, Optional[str]]]" = asyncio.Queue()
        self._tracked: Set[str] = set()
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"processing-worker-{i}") for i in range(self.workers)
        ]
        logger.info(f"Processing queue started with {self.workers} workers")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Processing queue stopped")

    def enqueue(self, document_id: str, api_key: Optional[str] = None) -> bool:
        """
        Queue a document for processing.

        Returns:
            False when the document is already queued or running
        """
        if document_id in self._tracked:
            return False
        self._tracked.add(document_id)
        self._queue.put_nowait((document_id, api_key))
        logger.info("Document queued for processing", extra={"document_id": document_id})
        return True

    async def recover(self, repository: Repository) -> int:
        """Requeue documents left pending or processing by a previous run."""
        documents = await repository.list_unfinished_documents()
        queued = sum(1 for document in documents if self.enqueue(document.id))
        if queued:
            logger.info(f"Recovered {queued} unfinished documents for processing")
        return queued

    async def join(self) -> None:
        """Wait until every queued document has been processed."""
        await self._queue.join()

    async def _worker(self, worker_id: int) -> None:
        while True:
            document_id, api_key = await self._queue.get()
            try:
                result = await self.processing_service.process(document_id, api_key=api_key)
                logger.debug(
                    f"Worker {worker_id} finished document",
                    extra={"document_id": document_id, "status": result.status},
                )
            except NotFoundError:
                logger.warning("Queued document no longer exists", extra={"document_id": document_id})
            except Exception as e:
                logger.error(
                    f"Processing worker error: {str(e)}",
                    exc_info=True,
                    extra={"document_id": document_id},
                )
            finally:
                self._tracked.discard(document_id)
                self._queue.task_done()
