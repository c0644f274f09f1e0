import argparse
import asyncio
import logging
from pathlib import Path
from typing import Optional, Union

from solarview.api_server import create_api, start_api_in_background
from solarview.app import SolarViewApp
from solarview.config import EngineConfig
from solarview.config_manager import ConfigurationManager, resolve_config_path


def load_config(path: Union[str, Path]) -> EngineConfig:
    """Load configuration from config.yaml (defaults when the file is absent)."""
    config_manager = ConfigurationManager(str(Path(path).expanduser().resolve()))
    cfg = config_manager.load_config()
    logging.getLogger(__name__).info(f"Configuration loaded - timezone: {cfg.timezone}, "
                                     f"database: {cfg.database.path or 'default'}")
    return cfg


async def amain(cfg_path: Optional[Union[str, Path]]) -> None:
    log = logging.getLogger(__name__)
    try:
        cfg = load_config(resolve_config_path(str(cfg_path) if cfg_path else None))
        app = SolarViewApp(cfg)
        if cfg.api.enabled:
            start_api_in_background(create_api(app), cfg.api.host, cfg.api.port)
        log.info("Application initialization completed, starting main loop...")
        await app.run()
    except KeyboardInterrupt:
        log.info("Application interrupted by user")
        raise
    except Exception as e:
        log.error(f"Fatal error in application: {e}", exc_info=True)
        raise


def main() -> None:
    parser = argparse.ArgumentParser(description="SolarView")
    parser.add_argument(
        "--config",
        help="Path to config.yaml (overrides SOLARVIEW_CONFIG and default).",
        required=False,
    )
    args = parser.parse_args()

    asyncio.run(amain(args.config))


if __name__ == "__main__":
    main()
