import logging
import asyncio

from init import get_session, init_tables
from job_runner import JobRunner
from binary_mlm.services.trigger_service import registerTriggers
from binary_mlm.store.document_store import DocumentStore
import config

logger = logging.getLogger(__name__)


async def setup() -> DocumentStore:
    """Подготовка базы данных и подписка триггеров"""
    session_factory, engine = get_session(config.DATABASE_URL)
    init_tables(engine)

    store = DocumentStore(session_factory)
    registerTriggers(store)

    logger.info(f"Document store ready at {engine.url.render_as_string(hide_password=True)}")
    return store


async def start_services(store: DocumentStore):
    """Запуск фоновых сервисов"""
    services = []

    job_runner = JobRunner(store)
    services.append(asyncio.create_task(
        job_runner.run(),
        name="job_runner"
    ))

    return services


async def main():
    """Основная асинхронная функция"""
    services = []
    try:
        store = await setup()
        services = await start_services(store)
        logger.info("Application setup completed")

        await asyncio.gather(*services)

    except Exception as e:
        logger.error(f"Critical error in main: {e}")
        raise
    finally:
        for task in services:
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass


if __name__ == '__main__':
    try:
        logging.basicConfig(
            level=logging.INFO,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )

        asyncio.run(main())
    except (KeyboardInterrupt, SystemExit):
        logger.info("Сервис остановлен.")
    except Exception as e:
        logger.critical(f"Unexpected error: {e}")
        raise
