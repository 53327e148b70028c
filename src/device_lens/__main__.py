"""
CLI entry point for device-lens.

Allows running with: python -m device_lens
"""

import os
from pathlib import Path


def main():
    """Main entry point for the device-lens CLI."""
    from .config_manager import ConfigManager
    from .main import run_server

    config_path = os.environ.get("DEVICE_LENS_CONFIG")
    config = ConfigManager(Path(config_path) if config_path else None).config

    port = int(os.environ.get("DEVICE_LENS_PORT", config.port))
    host = os.environ.get("DEVICE_LENS_HOST", config.host)
    data_dir = os.environ.get("DEVICE_LENS_DATA_DIR")
    if data_dir:
        config = config.model_copy(update={"data_dir": data_dir})

    run_server(host=host, port=port, config=config)


if __name__ == "__main__":
    main()
