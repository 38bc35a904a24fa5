# ============================================================================
# FILE: src/airshed/data/measurement_loader.py
# ============================================================================
import logging
from pathlib import Path
from typing import Dict, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)

DATE_COLUMNS = ('date', 'datetime', 'time', 'timestamp')
VALUE_COLUMNS = ('value', 'concentration', 'conc')


class MeasurementLoader:
    """
    Load a measured pollutant concentration series for one city.

    Input is a CSV or Parquet table with a date column and a value column,
    optionally carrying ``city``, ``pollutant`` and ``source`` columns that
    are used as filters. The output schema is always (date, value).
    """

    def __init__(self, config: Dict):
        self.config = config
        self.measurement_config = config.get('measurements', {})

    def load(self, path: Optional[Union[str, Path]] = None,
             city: Optional[str] = None,
             pollutant: Optional[str] = None,
             source: Optional[str] = None,
             start: Optional[str] = None,
             end: Optional[str] = None) -> pd.DataFrame:
        """
        Read and filter a measurement table.

        Args:
            path: Table path; defaults to ``measurements.path``
            city, pollutant, source: Optional filters on same-named columns
            start, end: Inclusive date bounds (YYYY-MM-DD)

        Returns:
            DataFrame with ``date`` (datetime64) and ``value`` (float) columns
        """

        path = Path(path or self.measurement_config.get('path', ''))
        if not path.is_file():
            raise FileNotFoundError(f"Measurement file not found: {path}")

        if path.suffix.lower() == '.parquet':
            raw = pd.read_parquet(path)
        else:
            raw = pd.read_csv(path)
        logger.info(f"Read {len(raw)} measurement rows from {path}")

        filters = {
            'city': city or self.measurement_config.get('city'),
            'pollutant': pollutant or self.measurement_config.get('pollutant'),
            'source': source or self.measurement_config.get('source'),
        }
        columns = {c.lower(): c for c in raw.columns}
        for column, wanted in filters.items():
            if wanted is None:
                continue
            if column not in columns:
                logger.warning(f"Cannot filter on '{column}': column not in {path.name}")
                continue
            raw = raw[raw[columns[column]].astype(str).str.lower() == str(wanted).lower()]

        series = self.standardize(raw)

        if start:
            series = series[series['date'] >= pd.Timestamp(start)]
        if end:
            series = series[series['date'] < pd.Timestamp(end) + pd.Timedelta(days=1)]

        logger.info(f"Kept {len(series)} measurements after filtering")
        return series.reset_index(drop=True)

    @staticmethod
    def standardize(raw: pd.DataFrame) -> pd.DataFrame:
        """Map a raw table onto the (date, value) schema."""

        columns = {c.lower(): c for c in raw.columns}
        date_col = next((columns[c] for c in DATE_COLUMNS if c in columns), None)
        value_col = next((columns[c] for c in VALUE_COLUMNS if c in columns), None)

        if date_col is None or value_col is None:
            raise ValueError(
                f"Measurement table needs a date column {DATE_COLUMNS} and a value "
                f"column {VALUE_COLUMNS}; got {list(raw.columns)}"
            )

        series = pd.DataFrame({
            'date': pd.to_datetime(raw[date_col], errors='coerce'),
            'value': pd.to_numeric(raw[value_col], errors='coerce'),
        })

        bad_dates = series['date'].isna()
        if bad_dates.any():
            logger.warning(f"Dropping {int(bad_dates.sum())} measurements with unparseable dates")
            series = series[~bad_dates]

        return series.sort_values('date', kind='mergesort')
