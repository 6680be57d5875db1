import unittest
from datetime import date, datetime, timedelta, timezone

from pheno_fusion.data.timeseries import Observation, RadarObservation
from pheno_fusion.errors import PersistenceError
from pheno_fusion.processing import models
from pheno_fusion.processing.calibration import CalibrationModel, CalibrationStore, VH, VV_VH
from pheno_fusion.processing.sar_fusion import (
    fuse_sar_ndvi,
    find_gaps,
    calculate_harvest_confidence,
    build_fusion_metrics,
    fusion_from_dict,
    optical_passthrough,
    OPTICAL,
    SAR_FUSED,
)

START = date(2025, 1, 1)


def day(n):
    return START + timedelta(days=n)


def linear_calibration(field_id="field-1", r2=0.75):
    # NDVI = 1.5 + 0.05 * VH, so VH -20 dB -> 0.5
    return CalibrationModel(
        field_id=field_id,
        feature_type=VH,
        model_type=models.LINEAR,
        r2=r2,
        rmse=0.04,
        correlation_vv=0.3,
        correlation_vh=0.85,
        trained_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        n_pairs=10,
        params={'coeffs': [0.05], 'intercept': 1.5},
    )


def gapped_optical():
    """Optical every 5 days except a 20-day hole between day 10 and day 30."""
    return tuple(
        [Observation(day(d), raw=0.4 + d * 0.005) for d in (0, 5, 10)]
        + [Observation(day(20), raw=0.2, cloud_cover=80.0)]
        + [Observation(day(d), raw=0.4 + d * 0.005) for d in (30, 35, 40)]
    )


def radar(days):
    return tuple(RadarObservation(day(d), vv=-11.0, vh=-20.0) for d in days)


class TestFuseSarNdvi(unittest.TestCase):

    def setUp(self):
        self.store = CalibrationStore([linear_calibration()])

    def test_fills_only_inside_gaps(self):
        result = fuse_sar_ndvi("field-1", gapped_optical(), radar((0, 15, 20, 25, 30, 45)), self.store)

        fused = [p for p in result.points if p.source == SAR_FUSED]
        self.assertEqual([p.date for p in fused], [day(15), day(25)])
        self.assertEqual(result.gaps_filled, 2)
        self.assertTrue(result.calibration_used)
        self.assertEqual(result.feature_used, VH)
        self.assertEqual(result.fusion_method, models.LINEAR)
        for p in fused:
            self.assertAlmostEqual(p.ndvi, 0.5)

    def test_never_overwrites_optical_dates(self):
        optical = gapped_optical()
        result = fuse_sar_ndvi("field-1", optical, radar((0, 15, 20, 25, 30, 45)), self.store)

        optical_dates = {o.date for o in optical}
        for p in result.points:
            if p.source == SAR_FUSED:
                self.assertNotIn(p.date, optical_dates)
        dates = [p.date for p in result.points]
        self.assertEqual(dates, sorted(dates))
        # The cloudy sample is dropped from the fused series
        self.assertNotIn(day(20), dates)

    def test_no_gaps_returns_optical(self):
        optical = tuple(Observation(day(d), raw=0.5) for d in range(0, 50, 5))
        result = fuse_sar_ndvi("field-1", optical, radar(range(2, 50, 6)), self.store)

        self.assertEqual(result.gaps_filled, 0)
        self.assertTrue(all(p.source == OPTICAL for p in result.points))
        self.assertTrue(result.calibration_used)

    def test_too_little_radar_passthrough(self):
        result = fuse_sar_ndvi("field-1", gapped_optical(), radar((15, 25)), self.store)
        self.assertEqual(result, optical_passthrough(gapped_optical()))
        self.assertFalse(result.calibration_used)

    def test_untrainable_field_passthrough(self):
        store = CalibrationStore()
        result = fuse_sar_ndvi("field-2", gapped_optical(), radar((15, 22, 25, 27, 28)), store)

        self.assertEqual(result.gaps_filled, 0)
        self.assertNotIn("field-2", store)

    def test_store_failure_does_not_block_fusion(self):
        class FailingStore(CalibrationStore):
            def save(self, model):
                raise PersistenceError("disk full")

        dates = [day(d) for d in range(0, 120, 10)]
        optical = tuple(Observation(d, raw=0.2 + 0.05 * i) for i, d in enumerate(dates) if i not in (6, 7))
        sar = tuple(RadarObservation(d, vv=-12.0, vh=-24.0 + i) for i, d in enumerate(dates))

        result = fuse_sar_ndvi("field-3", optical, sar, FailingStore())
        self.assertTrue(result.calibration_used)
        self.assertGreater(result.gaps_filled, 0)

    def test_stored_model_with_wrong_feature_count_passthrough(self):
        broken = linear_calibration()._replace(feature_type=VV_VH)
        store = CalibrationStore([broken])

        result = fuse_sar_ndvi("field-1", gapped_optical(), radar((0, 15, 20, 25, 30, 45)), store)

        self.assertEqual(result, optical_passthrough(gapped_optical()))
        self.assertEqual(store.get("field-1"), broken)

    def test_find_gaps(self):
        obs = [Observation(day(d), raw=0.5) for d in (0, 10, 21, 25)]
        self.assertEqual(find_gaps(obs), [(day(10), day(21))])


def trainable_series():
    dates = [day(d) for d in range(0, 120, 10)]
    optical = tuple(Observation(d, raw=0.2 + 0.05 * i) for i, d in enumerate(dates) if i not in (6, 7))
    sar = tuple(RadarObservation(d, vv=-12.0, vh=-24.0 + i) for i, d in enumerate(dates))
    return optical, sar


class TestStoredCalibration(unittest.TestCase):

    def test_stored_model_reused_without_retrain(self):
        stored = linear_calibration("field-3")
        store = CalibrationStore([stored])
        optical, sar = trainable_series()

        result = fuse_sar_ndvi("field-3", optical, sar, store)

        self.assertEqual(store.get("field-3"), stored)
        fused = [p.ndvi for p in result.points if p.source == SAR_FUSED]
        # VH -18 and -17 dB through NDVI = 1.5 + 0.05 * VH
        self.assertEqual(len(fused), 2)
        self.assertAlmostEqual(fused[0], 0.6)
        self.assertAlmostEqual(fused[1], 0.65)

    def test_force_retrain_replaces_stored_model(self):
        stored = linear_calibration("field-3")
        store = CalibrationStore([stored])
        optical, sar = trainable_series()

        result = fuse_sar_ndvi("field-3", optical, sar, store, force_retrain=True)

        retrained = store.get("field-3")
        self.assertNotEqual(retrained, stored)
        self.assertGreater(retrained.trained_at, stored.trained_at)
        self.assertTrue(result.calibration_used)
        self.assertEqual(result.model_r2, retrained.r2)

    def test_failed_retrain_keeps_stored_model(self):
        stored = linear_calibration()
        store = CalibrationStore([stored])

        result = fuse_sar_ndvi(
            "field-1", gapped_optical(), radar((0, 15, 20, 25, 30, 45)), store, force_retrain=True
        )

        self.assertEqual(store.get("field-1"), stored)
        self.assertTrue(result.calibration_used)
        self.assertEqual(result.gaps_filled, 2)


class TestFusionOutputs(unittest.TestCase):

    def test_harvest_confidence_bands(self):
        store = CalibrationStore([linear_calibration(r2=0.8)])
        optical_only = optical_passthrough(gapped_optical())
        self.assertEqual(calculate_harvest_confidence(optical_only, 70).source, "OPTICAL")

        fused = fuse_sar_ndvi("field-1", gapped_optical(), radar((0, 15, 20, 25, 30, 45)), store)
        harvest = calculate_harvest_confidence(fused, 70)
        # 2 SAR of 8 points -> MIXED
        self.assertEqual(harvest.source, "MIXED")
        self.assertAlmostEqual(harvest.confidence, 70 * (0.95 + 0.8 * 0.05))

    def test_fusion_metrics(self):
        store = CalibrationStore([linear_calibration(r2=0.8)])
        fused = fuse_sar_ndvi("field-1", gapped_optical(), radar((0, 15, 20, 25, 30, 45)), store)
        metrics = build_fusion_metrics(fused)

        self.assertEqual(metrics.gaps_filled, 2)
        self.assertEqual(metrics.max_gap_days, 10)
        self.assertAlmostEqual(metrics.radar_contribution, 0.25)
        self.assertEqual(metrics.continuity_score, 0.9)

    def test_round_trip(self):
        store = CalibrationStore([linear_calibration()])
        fused = fuse_sar_ndvi("field-1", gapped_optical(), radar((0, 15, 20, 25, 30, 45)), store)
        self.assertEqual(fusion_from_dict(fused.to_dict()), fused)


if __name__ == '__main__':
    unittest.main()
