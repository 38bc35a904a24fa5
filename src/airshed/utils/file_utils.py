# ============================================================================
# FILE: src/airshed/utils/file_utils.py
# ============================================================================
import json
import logging
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any, Dict, Union

import pandas as pd
import yaml

logger = logging.getLogger(__name__)


def load_config(config_path: Union[str, Path]) -> Dict:
    """Load configuration from YAML file."""
    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f) or {}
        logger.info(f"Configuration loaded from {config_path}")
        return config
    except Exception as e:
        logger.error(f"Failed to load config: {e}")
        raise


class FileManager:
    """
    File handling for pipeline outputs.

    Handles:
    - Run directory creation
    - Table export (CSV, Parquet, JSON)
    - JSON export of status and metadata
    """

    def __init__(self, config: Dict):
        self.config = config
        self.base_output_path = Path(
            config.get('processing', {}).get('output', {}).get('base_path', './data/outputs')
        )

    def create_output_directories(self, base_path: Union[str, Path]) -> None:
        """Create all necessary output directories."""

        base_path = Path(base_path)

        for directory in ['emissions', 'trajectories', 'analysis']:
            dir_path = base_path / directory
            dir_path.mkdir(parents=True, exist_ok=True)
            logger.debug(f"Created directory: {dir_path}")

        logger.info(f"Output directories created at: {base_path}")

    def save_dataframe(self, df: pd.DataFrame, file_path: Union[str, Path],
                      format_type: str = 'csv', **kwargs) -> bool:
        """Save DataFrame to file in specified format."""

        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            if format_type.lower() == 'csv':
                df.to_csv(file_path, index=False, **kwargs)
            elif format_type.lower() == 'json':
                df.to_json(file_path, orient='records', indent=2, date_format='iso', **kwargs)
            elif format_type.lower() == 'parquet':
                df.to_parquet(file_path, **kwargs)
            else:
                raise ValueError(f"Unsupported format: {format_type}")

            logger.info(f"DataFrame saved to {file_path} ({format_type.upper()})")
            return True

        except Exception as e:
            logger.error(f"Failed to save DataFrame to {file_path}: {e}")
            return False

    def save_json(self, data: Any, file_path: Union[str, Path]) -> bool:
        """Save dictionary or list as JSON file."""

        file_path = Path(file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(file_path, 'w') as f:
                json.dump(data, f, indent=2, default=self._json_serializer)

            logger.info(f"JSON saved to {file_path}")
            return True

        except Exception as e:
            logger.error(f"Failed to save JSON to {file_path}: {e}")
            return False

    def _json_serializer(self, obj):
        """JSON serializer for non-standard types."""

        if isinstance(obj, pd.Timestamp):
            return obj.isoformat()
        elif isinstance(obj, pd.DataFrame):
            return obj.to_dict('records')
        elif isinstance(obj, (pd.Series, pd.Index)):
            return obj.tolist()
        elif isinstance(obj, Path):
            return str(obj)
        elif is_dataclass(obj):
            return asdict(obj)
        elif hasattr(obj, 'isoformat'):  # date, datetime
            return obj.isoformat()
        elif hasattr(obj, 'item'):  # numpy types
            return obj.item()
        elif hasattr(obj, 'tolist'):  # numpy arrays
            return obj.tolist()

        raise TypeError(f"Object of type {type(obj)} is not JSON serializable")
