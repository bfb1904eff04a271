"""
AI Escrow Service - Main Application Entry Point

This module orchestrates the entire application by:
- Loading configuration
- Initializing logger, escrow store and risk assessor
- Setting up admin notifications
- Running the escrow automation scheduler
- Serving the FastAPI escrow API
- Managing graceful shutdown
"""

import asyncio
import logging
import sys
from datetime import datetime
from typing import Optional

import uvicorn

from api_server import create_app
from config import Config, ConfigError, get_config
from escrow_automation import EscrowAutomation
from escrow_database import create_escrow_store
from escrow_policy import RiskPolicy
from escrow_service import EscrowService
from notifications import create_notifier
from risk_assessment import RemoteRiskAssessor, create_risk_assessor
from utils import format_currency, setup_logger

logger: Optional[logging.Logger] = None


async def display_startup_banner(config: Config, service: EscrowService) -> None:
    """
    Display startup banner with configuration information.

    Args:
        config: Application configuration object
        service: Initialized escrow service
    """
    try:
        stats = await service.get_dashboard_stats()
        escrow_info = f"""
💰 Escrow System Status:
   • Pending:            {stats.pending}
   • Active:             {stats.active}
   • Disputed:           {stats.disputed}
   • Completed Volume:   {format_currency(stats.total_volume, config.currency)}"""
    except Exception as e:
        logger.warning(f"Could not fetch escrow stats: {e}")
        escrow_info = """
💰 Escrow System Status:
   • Stats unavailable"""

    assessor = "remote" if isinstance(service.assessor, RemoteRiskAssessor) else "rule-based"

    banner = f"""
╔{'='*58}╗
║{' '*20}AI ESCROW SERVICE{' '*21}║
╚{'='*58}╝

📅 Startup Time: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}

🔧 Configuration:
   • Service:            {config.app_name}
   • Environment:        {config.app_env}
   • Version:            {config.app_version}
   • Storage:            {'PostgreSQL' if config.has_database_config else 'in-memory'}
   • Risk Assessor:      {assessor}
   • Risk Bands:         <{config.risk_low_threshold} low, >={config.risk_high_threshold} high
   • Notifications:      {'Telegram' if config.has_telegram_config else 'disabled'}
   • API Server:         {config.api_host}:{config.api_port}
   • Log Level:          {config.log_level}
{escrow_info}

🚀 Starting services...
"""
    print(banner)
    logger.info("Application startup initiated")


async def async_main(config: Config) -> None:
    """
    Main asynchronous function that orchestrates the entire application.
    """
    store = None
    notifier = None
    service = None
    automation = None

    try:
        # Initialize escrow store
        logger.info("Initializing escrow store...")
        store = await create_escrow_store(config)
        logger.info("✓ Escrow store initialized successfully")

        # Admin notifications
        notifier = create_notifier(config)
        await notifier.start()

        # Escrow engine
        policy = RiskPolicy.from_config(config)
        service = EscrowService(
            store,
            assessor=create_risk_assessor(config, policy),
            policy=policy,
            config=config,
            notifier=notifier,
        )

        await display_startup_banner(config, service)

        # Background automation
        automation = EscrowAutomation(service, notifier, config)
        await automation.start()

        # API server
        app = create_app(service, notifier, config)
        server = uvicorn.Server(uvicorn.Config(
            app=app,
            host=config.api_host,
            port=config.api_port,
            log_level=config.log_level.lower(),
            access_log=True,
        ))

        logger.info(f"✓ Escrow API starting on {config.api_host}:{config.api_port}")
        await server.serve()

    finally:
        # Cleanup
        logger.info("Performing cleanup...")

        if automation:
            await automation.stop()
            logger.info("✓ Escrow automation stopped")

        if service:
            await service.close()

        if store:
            await store.disconnect()
            logger.info("✓ Escrow store closed")

        if notifier:
            await notifier.stop()

        logger.info("✓ Cleanup complete")


def main() -> None:
    """
    Main entry point for the application.
    Loads configuration, sets up logging and runs the async main function.
    Shutdown signals (SIGINT, SIGTERM) are handled by the uvicorn server.
    """
    global logger

    try:
        config = get_config()
    except ConfigError as e:
        print(f"ERROR: Invalid configuration: {e}")
        sys.exit(1)

    logger = setup_logger(
        log_level=config.log_level,
        log_file=config.log_file,
        log_format=config.log_format,
        max_bytes=config.log_max_size,
        backup_count=config.log_backup_count
    )
    logger.info("Logger initialized successfully")

    try:
        asyncio.run(async_main(config))
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.critical(f"Application failed: {e}", exc_info=True)
        sys.exit(1)

    logger.info("Shutdown complete. Goodbye!")


if __name__ == "__main__":
    main()
