# ============================================================================
# FILE: src/airshed/main.py
# ============================================================================
import sys
import logging
import argparse
from pathlib import Path
from datetime import datetime
from typing import Dict, Optional

import pandas as pd

from airshed import __version__
from airshed.config.logging_config import setup_logging_from_config, log_system_info
from airshed.data.boundary_loader import RegionLoader
from airshed.data.facility_loader import FacilityLoader, facilities_near_trajectories
from airshed.data.measurement_loader import MeasurementLoader
from airshed.analysis.zonal_aggregator import ZonalAggregator
from airshed.analysis.trajectory_analysis import (cluster_summary, cluster_trajectories,
                                                  concentration_weighted_grid, summarize_batch)
from airshed.trajectory.batch_runner import TrajectoryBatchRunner
from airshed.trajectory.harmonizer import harmonize, join_measurements
from airshed.trajectory.hysplit_engine import HysplitEngine, Receptor
from airshed.utils.file_utils import FileManager, load_config

logger = logging.getLogger(__name__)


class AirshedPipeline:
    """
    Entry point for both analysis pipelines.

    Emissions: administrative regions + inventory grids -> per-region annual
    emissions by pollutant and sector.

    Trajectories: receptor + date range -> backward trajectories in parallel
    chunks -> canonical schema -> joined with daily measurements ->
    clusters, CWT field and nearby facilities.
    """

    def __init__(self, config_path: str):
        self.config = load_config(config_path)
        self.file_manager = FileManager(self.config)

        self.run_id = datetime.now().strftime('%Y%m%d_%H%M%S')
        self.output_dir = self.file_manager.base_output_path / f"run_{self.run_id}"

        logger.info(f"AirshedPipeline initialized - Run ID: {self.run_id}")

    def run_emissions(self) -> Dict:
        """Aggregate every grid file of the configured directory into regions."""

        emission_config = self.config.get('emissions', {})
        grid_dir = emission_config.get('grid_dir')
        if not grid_dir:
            raise ValueError("emissions.grid_dir is not configured")

        logger.info("=" * 80)
        logger.info("EMISSION AGGREGATION STARTED")
        logger.info("=" * 80)

        self.file_manager.create_output_directories(self.output_dir)

        regions = RegionLoader(self.config).load()
        aggregator = ZonalAggregator(self.config)
        result = aggregator.aggregate_directory(grid_dir, regions)

        out = self.output_dir / "emissions"
        self.file_manager.save_dataframe(result.records, out / "emissions_by_region.csv")
        self.file_manager.save_json(result.failures, out / "failures.json")
        self.file_manager.save_json(result.diagnostics, out / "conservation.json")

        summary = {
            'run_id': self.run_id,
            'n_regions': int(len(regions)),
            'n_records': int(len(result.records)),
            'n_files': len(result.diagnostics),
            'n_failures': len(result.failures),
            'output_directory': str(out),
        }
        self._save_metadata('emissions', summary)
        logger.info(f"Emission aggregation finished: {summary}")
        return summary

    def run_trajectories(self, start_date: str, end_date: str) -> Dict:
        """Compute, harmonize and join backward trajectories for a date range."""

        traj_config = self.config.get('trajectory', {})
        receptor_config = traj_config.get('receptor', {})
        receptor = Receptor(
            lat=float(receptor_config['lat']),
            lon=float(receptor_config['lon']),
            height_m=float(receptor_config.get('height_m', 100.0)),
            name=receptor_config.get('name', 'receptor'),
        )
        dates = pd.date_range(start_date, end_date, freq='D')

        logger.info("=" * 80)
        logger.info("TRAJECTORY BATCH STARTED")
        logger.info("=" * 80)
        logger.info(f"Receptor: {receptor}")
        logger.info(f"Period: {start_date} to {end_date} ({len(dates)} days)")

        self.file_manager.create_output_directories(self.output_dir)
        out = self.output_dir / "trajectories"

        runner = TrajectoryBatchRunner(HysplitEngine(self.config), self.config)
        batch = runner.run(receptor, dates)
        self.file_manager.save_json(batch.status_table(), out / "chunk_status.json")

        trajectories = harmonize(batch.frame)

        value_name = self.config.get('measurements', {}).get('value_name', 'value')
        measurements = self._load_measurements(start_date, end_date)
        if measurements is not None:
            trajectories = join_measurements(trajectories, measurements, value_name)

        self.file_manager.save_dataframe(trajectories, out / "trajectories.csv")

        summary = {
            'run_id': self.run_id,
            'receptor': receptor.name,
            'chunks_total': len(batch.results),
            'chunks_failed': len(batch.failed),
            **summarize_batch(trajectories),
            'output_directory': str(out),
        }

        if not trajectories.empty:
            self._run_trajectory_analysis(trajectories, value_name if measurements is not None else None)

        self._save_metadata('trajectories', summary)
        logger.info(f"Trajectory batch finished: {summary}")
        return summary

    def _load_measurements(self, start_date: str, end_date: str) -> Optional[pd.DataFrame]:
        if not self.config.get('measurements', {}).get('path'):
            logger.info("No measurement file configured; skipping join")
            return None
        return MeasurementLoader(self.config).load(start=start_date, end=end_date)

    def _run_trajectory_analysis(self, trajectories: pd.DataFrame,
                                 value_name: Optional[str]) -> None:
        analysis_config = self.config.get('analysis', {})
        out = self.output_dir / "analysis"

        n_clusters = int(analysis_config.get('n_clusters', 0) or 0)
        if n_clusters > 0:
            labels = cluster_trajectories(
                trajectories, n_clusters=n_clusters,
                n_points=int(analysis_config.get('cluster_points', 24)),
            )
            self.file_manager.save_dataframe(
                labels.rename_axis('traj_key').reset_index(), out / "trajectory_clusters.csv"
            )
            self.file_manager.save_dataframe(
                cluster_summary(trajectories, labels, value_name), out / "cluster_summary.csv"
            )

        if value_name:
            cwt = concentration_weighted_grid(
                trajectories, value_name,
                resolution=float(analysis_config.get('cwt_resolution', 1.0)),
                min_points=int(analysis_config.get('cwt_min_points', 3)),
            )
            self.file_manager.save_dataframe(cwt, out / "cwt_grid.csv")

        facility_config = self.config.get('facilities', {})
        if facility_config.get('path'):
            facilities = FacilityLoader(self.config).load()
            nearby = facilities_near_trajectories(
                pd.DataFrame(facilities.drop(columns='geometry')), trajectories,
                radius_km=float(facility_config.get('radius_km', 25.0)),
            )
            self.file_manager.save_dataframe(nearby, out / "facilities_upwind.csv")

    def _save_metadata(self, mode: str, summary: Dict) -> None:
        metadata = {
            'run_id': self.run_id,
            'mode': mode,
            'timestamp': datetime.now().isoformat(),
            'version': __version__,
            'config_used': self.config,
            'summary': summary,
        }
        self.file_manager.save_json(metadata, self.output_dir / f"{mode}_metadata.json")


def main():
    """Main function with command line interface."""

    parser = argparse.ArgumentParser(
        description='Provincial emission aggregation and upwind trajectory analysis',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Aggregate EDGAR grids into provinces
  airshed --mode emissions --config config/config.yaml

  # Backward trajectories for January 2019
  airshed --mode trajectories --start-date 2019-01-01 --end-date 2019-01-31
        """
    )

    parser.add_argument('--config', type=str, default='config/config.yaml',
                       help='Path to configuration file')
    parser.add_argument('--mode', choices=['emissions', 'trajectories'],
                       default='emissions',
                       help='Pipeline to run')
    parser.add_argument('--start-date', type=str,
                       help='Start date (YYYY-MM-DD)')
    parser.add_argument('--end-date', type=str,
                       help='End date (YYYY-MM-DD)')
    parser.add_argument('--verbose', '-v', action='store_true',
                       help='Enable verbose logging')

    args = parser.parse_args()

    if args.mode == 'trajectories' and (not args.start_date or not args.end_date):
        parser.error("Trajectory mode requires --start-date and --end-date")

    try:
        pipeline = AirshedPipeline(args.config)

        log_config = pipeline.config.get('logging', {})
        setup_logging_from_config(
            log_config,
            log_file=str(Path(log_config.get('dir', 'logs')) / f"pipeline_{pipeline.run_id}.log"),
            verbose=args.verbose,
        )
        log_system_info()

        if args.mode == 'emissions':
            results = pipeline.run_emissions()
            print(f"\nEmission aggregation completed: {results['n_records']} records, "
                  f"{results['n_failures']} failed files")
        else:
            results = pipeline.run_trajectories(args.start_date, args.end_date)
            print(f"\nTrajectory batch completed: {results['n_trajectories']} trajectories, "
                  f"{results['chunks_failed']}/{results['chunks_total']} chunks missing")
        print(f"Results: {results['output_directory']}")

    except KeyboardInterrupt:
        print("\nPipeline interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.exception("Pipeline failed")
        print(f"\nPipeline failed: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
