import asyncio
import sys
from pathlib import Path

# Ensure labforge module is discoverable
project_root_main = Path(__file__).resolve().parent
if str(project_root_main) not in sys.path:
    sys.path.insert(0, str(project_root_main))

from labforge.config import config as labforge_config
from labforge.logger import logger, define_log_level
from labforge.service import LabService


async def run_labforge():
    define_log_level(print_level="INFO", logfile_level="DEBUG", name="LabForge_Service")
    logger.info("--- Starting LabForge ---")
    logger.info(f"LabForge Orchestrator Backend: {labforge_config.orchestrator.backend}")
    logger.info(f"LabForge Namespace: {labforge_config.orchestrator.namespace}")
    logger.info(f"LabForge Expiry Sweep Interval: {labforge_config.sweeper.interval_seconds}s")

    service = None
    try:
        service = LabService()
        await service.start()
        logger.info(f"LabForge: Lab types available: {', '.join(service.list_lab_types())}")
        logger.info(f"LabForge: {len(await service.list_templates())} active templates.")
    except Exception:
        logger.exception("LabForge: Critical error - Failed to start the lab service.")
        if service:
            await service.stop()
        return

    try:
        # Runs until interrupted; the sweeper and setup pool work in the background
        while True:
            await asyncio.sleep(60)
            logger.debug(f"LabForge: Stats: {service.get_stats()}")
    except asyncio.CancelledError:
        logger.warning("LabForge: Service task cancelled.")
    finally:
        await service.stop()
        logger.info("--- LabForge Finished ---")


def main():
    try:
        asyncio.run(run_labforge())
    except KeyboardInterrupt:
        logger.info("LabForge terminated by user.")


if __name__ == "__main__":
    main()
