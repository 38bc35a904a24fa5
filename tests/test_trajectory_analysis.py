# ============================================================================
# FILE: tests/test_trajectory_analysis.py
# ============================================================================
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).parent.parent / "src"))

import pytest
import numpy as np
import pandas as pd

from airshed.analysis.trajectory_analysis import (
    cluster_summary, cluster_trajectories, concentration_weighted_grid,
    resample_trajectories, summarize_batch,
)
from airshed.data.facility_loader import FacilityLoader, facilities_near_trajectories


def straight_trajectory(key, dlat, dlon, value=None, n_points=13, day=1):
    ages = -np.arange(n_points, dtype=float)
    frame = pd.DataFrame({
        'traj_key': key,
        'hour_inc': ages,
        'lat': 39.9 + dlat * np.arange(n_points),
        'lon': 116.4 + dlon * np.arange(n_points),
        'year': 2019, 'month': 1, 'day': day,
    })
    if value is not None:
        frame['pm25'] = value
    return frame


class TestTrajectoryClusters:
    """Path-shape clustering."""

    @classmethod
    def setup_class(cls):
        rng = np.random.default_rng(3)
        northwest = [straight_trajectory(f"nw_{i}", 0.3 + rng.normal(0, 0.01),
                                         -0.4 + rng.normal(0, 0.01), value=40.0, day=i + 1)
                     for i in range(6)]
        south = [straight_trajectory(f"s_{i}", -0.35 + rng.normal(0, 0.01),
                                     0.02 + rng.normal(0, 0.01), value=120.0, day=i + 10)
                 for i in range(4)]
        cls.trajectories = pd.concat(northwest + south, ignore_index=True)

    def test_resample_shape(self):
        features = resample_trajectories(self.trajectories, n_points=8)
        assert features.shape == (10, 16)
        assert features.loc['nw_0', 'lat_0'] == pytest.approx(39.9)

    def test_two_flow_regimes_separated(self):
        labels = cluster_trajectories(self.trajectories, n_clusters=2, n_points=8)

        assert set(labels[labels.index.str.startswith('nw')]) == {1}
        assert set(labels[labels.index.str.startswith('s')]) == {2}

    def test_summary_reports_mean_concentration(self):
        labels = cluster_trajectories(self.trajectories, n_clusters=2, n_points=8)
        summary = cluster_summary(self.trajectories, labels, 'pm25')

        assert summary['n_trajectories'].tolist() == [6, 4]
        assert summary['share_pct'].tolist() == pytest.approx([60.0, 40.0])
        assert summary['mean_pm25'].tolist() == pytest.approx([40.0, 120.0])

    def test_more_clusters_than_trajectories(self):
        subset = self.trajectories[self.trajectories['traj_key'].isin(['nw_0', 's_0'])]
        labels = cluster_trajectories(subset, n_clusters=5, n_points=8)
        assert sorted(labels.unique()) == [1, 2]

    def test_batch_counts(self):
        counts = summarize_batch(self.trajectories)
        assert counts == {'n_points': 130, 'n_trajectories': 10, 'n_days': 10}
        assert summarize_batch(pd.DataFrame())['n_trajectories'] == 0


class TestConcentrationWeightedGrid:
    """CWT field from joined trajectories."""

    def test_cells_below_min_points_masked(self):
        df = pd.concat([
            straight_trajectory('a', 0.0, 0.0, value=10.0, n_points=5),
            straight_trajectory('b', 0.0, 0.0, value=30.0, n_points=5),
            pd.DataFrame({'traj_key': ['c'], 'hour_inc': [-1.0], 'lat': [10.2], 'lon': [10.2],
                          'year': [2019], 'month': [1], 'day': [1], 'pm25': [99.0]}),
        ], ignore_index=True)

        grid = concentration_weighted_grid(df, 'pm25', resolution=1.0, min_points=3)

        dense = grid[(grid['lat'] == 39.5) & (grid['lon'] == 116.5)]
        assert dense['n_points'].item() == 8
        assert dense['cwt'].item() == pytest.approx(20.0)

        sparse = grid[(grid['lat'] == 10.5) & (grid['lon'] == 10.5)]
        assert np.isnan(sparse['cwt'].item())

    def test_no_values_gives_empty_grid(self):
        df = straight_trajectory('a', 0.1, 0.1, value=np.nan)
        assert concentration_weighted_grid(df, 'pm25').empty


class TestFacilities:
    """Facilities passed over by trajectories."""

    def test_load_and_proximity(self, tmp_path):
        path = tmp_path / 'facilities.csv'
        pd.DataFrame({
            'Name': ['Tangshan Steel', 'Far Plant', 'Broken'],
            'Sector': ['Industry', 'Energy', 'Energy'],
            'Latitude': [40.5, 20.0, 120.0],
            'Longitude': [115.6, 100.0, 10.0],
        }).to_csv(path, index=False)

        facilities = FacilityLoader({}).load(path)
        assert facilities['name'].tolist() == ['Tangshan Steel', 'Far Plant']
        assert facilities.crs.to_epsg() == 4326

        trajectory = straight_trajectory('nw_0', 0.3, -0.4)
        nearby = facilities_near_trajectories(
            pd.DataFrame(facilities.drop(columns='geometry')), trajectory, radius_km=25.0
        )

        assert nearby['name'].tolist() == ['Tangshan Steel']
        assert nearby['min_distance_km'].item() < 1.0
        assert nearby['n_points'].item() >= 1

    def test_required_columns(self, tmp_path):
        path = tmp_path / 'facilities.csv'
        pd.DataFrame({'name': ['x'], 'lat': [1.0]}).to_csv(path, index=False)

        with pytest.raises(ValueError):
            FacilityLoader({}).load(path)
