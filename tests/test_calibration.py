import json
import unittest
import numpy as np
import pytest
from unittest.mock import patch
from datetime import date, datetime, timedelta, timezone

from pheno_fusion.errors import CalibrationError, PersistenceError
from pheno_fusion.data.timeseries import Observation, RadarObservation
from pheno_fusion.processing import models
from pheno_fusion.processing.calibration import (
    train_local_calibration,
    select_best_feature,
    find_pairs,
    feature_vector,
    calibration_from_dict,
    CalibrationModel,
    CalibrationStore,
    JsonCalibrationStore,
    VH,
    VV,
    VV_VH,
)

TRAINED_AT = datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

# VH tracks NDVI with |r| close to 0.82; VV is noise
PAIR_NDVI = [0.20, 0.30, 0.40, 0.50, 0.60, 0.70, 0.80, 0.75, 0.65]
PAIR_NOISE = [2.5, -2.5, 1.25, -1.25, 2.5, -2.5, 1.25, -1.25, 0.0]
PAIR_VV = [-12.0, -12.5, -11.9, -11.6, -12.3, -11.8, -12.1, -12.0, -12.4]


def generate_dates(start, count, interval_days=12):
    return [start + timedelta(days=i * interval_days) for i in range(count)]


def scenario_series():
    dates = generate_dates(date(2024, 10, 1), len(PAIR_NDVI))
    optical = tuple(Observation(date=d, raw=v) for d, v in zip(dates, PAIR_NDVI))
    sar = tuple(
        RadarObservation(date=d, vv=vv, vh=-25.0 + 15.0 * n + e)
        for d, n, e, vv in zip(dates, PAIR_NDVI, PAIR_NOISE, PAIR_VV)
    )
    return optical, sar


class TestGaussJordan(unittest.TestCase):

    def test_inverse_matches_numpy(self):
        A = np.array([[4.0, 7.0, 1.0], [2.0, 6.0, 0.5], [1.0, 0.0, 3.0]])
        np.testing.assert_allclose(models.gauss_jordan_inverse(A), np.linalg.inv(A), atol=1e-9)

    def test_pivoting_handles_zero_diagonal(self):
        A = np.array([[0.0, 1.0], [1.0, 0.0]])
        np.testing.assert_allclose(models.gauss_jordan_inverse(A), A)

    def test_singular_matrix_is_floored(self):
        inverse = models.gauss_jordan_inverse(np.ones((2, 2)))
        self.assertTrue(np.all(np.isfinite(inverse)))

    def test_non_square_rejected(self):
        with self.assertRaises(CalibrationError):
            models.gauss_jordan_inverse(np.ones((2, 3)))

    def test_solve(self):
        x = models.gauss_jordan_solve(np.array([[2.0, 1.0], [1.0, 3.0]]), [3.0, 5.0])
        np.testing.assert_allclose(x, [0.8, 1.4])


class TestModels(unittest.TestCase):

    def setUp(self):
        self.X = [[float(i)] for i in range(10)]
        self.y = [0.5 + 0.03 * i for i in range(10)]

    def test_gpr_interpolates_with_uncertainty(self):
        params = models.train_gpr(self.X, self.y)
        prediction = models.predict(models.GPR, params, [4.5])

        self.assertAlmostEqual(prediction.mean, 0.635, delta=0.1)
        self.assertIsNotNone(prediction.std)
        self.assertGreaterEqual(prediction.std, 0.0)

    def test_params_are_json_serialisable(self):
        params = models.train_gpr(self.X, self.y)
        restored = json.loads(json.dumps(params))
        self.assertAlmostEqual(
            models.predict(models.GPR, restored, [3.0]).mean,
            models.predict(models.GPR, params, [3.0]).mean,
        )

    def test_knn_exact_match_dominates(self):
        params = models.train_knn(self.X, self.y, k=5)
        self.assertAlmostEqual(models.predict(models.KNN, params, [3.0]).mean, self.y[3], places=3)

    def test_linear_without_ridge_recovers_line(self):
        params = models.train_linear(self.X, self.y, ridge=0.0)
        self.assertAlmostEqual(params['coeffs'][0], 0.03)
        self.assertAlmostEqual(params['intercept'], 0.5)

    def test_resolve_model_type_fallback(self):
        linear_only = models.train_linear(self.X, self.y)
        self.assertEqual(models.resolve_model_type(models.GPR, linear_only), models.LINEAR)

        knn = models.train_knn(self.X, self.y)
        self.assertEqual(models.resolve_model_type(models.GPR, knn), models.KNN)
        self.assertIsInstance(models.build_predictor(models.GPR, knn), models.KnnPredictor)

    def test_feature_count_mismatch_rejected(self):
        for model_type, params in (
            (models.GPR, models.train_gpr(self.X, self.y)),
            (models.KNN, models.train_knn(self.X, self.y)),
            (models.LINEAR, models.train_linear(self.X, self.y)),
        ):
            with self.assertRaises(CalibrationError):
                models.predict(model_type, params, [-12.0, -18.0])

    def test_invalid_training_data(self):
        with self.assertRaises(CalibrationError):
            models.train_gpr([[1.0], [float('nan')]], [0.1, 0.2])
        with self.assertRaises(CalibrationError):
            models.train_knn([], [])


class TestCalibration(unittest.TestCase):

    def test_vh_selected_and_calibration_trained(self):
        optical, sar = scenario_series()

        selection = select_best_feature(sar, optical)
        self.assertEqual(selection.feature_type, VH)
        self.assertAlmostEqual(selection.correlation_vh, 0.82, delta=0.02)

        model = train_local_calibration("field-1", sar, optical, now=TRAINED_AT)
        self.assertIsNotNone(model)
        self.assertEqual(model.feature_type, VH)
        self.assertEqual(model.n_pairs, 9)
        self.assertIn(model.model_type, (models.GPR, models.KNN))
        self.assertIn('coeffs', model.params)
        self.assertEqual(model.trained_at, TRAINED_AT)

    def test_too_few_pairs(self):
        optical, sar = scenario_series()
        self.assertIsNone(train_local_calibration("field-1", sar[:7], optical))

    def test_pairs_within_tolerance(self):
        optical = (Observation(date(2025, 1, 10), raw=0.6), Observation(date(2025, 1, 20), raw=None))
        sar = (
            RadarObservation(date(2025, 1, 13), -11.0, -18.0),
            RadarObservation(date(2025, 1, 20), -11.0, -18.0),
            RadarObservation(date(2025, 2, 1), -11.0, -18.0),
        )
        pairs = find_pairs(sar, optical)
        self.assertEqual(len(pairs), 1)
        self.assertEqual(pairs[0].ndvi, 0.6)

    def test_feature_vector(self):
        self.assertEqual(feature_vector(VH, -12.0, -18.0), [-18.0])
        self.assertEqual(feature_vector(VV, -12.0, -18.0), [-12.0])
        self.assertEqual(feature_vector(VV_VH, -12.0, -18.0), [-12.0, -18.0])


class TestCalibrationStores(unittest.TestCase):

    def make_model(self, field_id="field-1"):
        return CalibrationModel(
            field_id=field_id,
            feature_type=VH,
            model_type=models.LINEAR,
            r2=0.71,
            rmse=0.05,
            correlation_vv=0.2,
            correlation_vh=0.82,
            trained_at=TRAINED_AT,
            n_pairs=9,
            params={'coeffs': [0.05], 'intercept': 1.5},
        )

    def test_memory_store(self):
        store = CalibrationStore()
        store.save(self.make_model())
        self.assertIn("field-1", store)
        self.assertEqual(len(store), 1)
        store.delete("field-1")
        self.assertIsNone(store.get("field-1"))

    def test_model_round_trip(self):
        model = self.make_model()
        self.assertEqual(calibration_from_dict(json.loads(json.dumps(model.to_dict()))), model)


def test_json_store_persists_across_instances(tmp_path):
    path = str(tmp_path / "calibrations.json")
    optical, sar = scenario_series()
    model = train_local_calibration("field-9", sar, optical, now=TRAINED_AT)

    JsonCalibrationStore(path).save(model)
    reloaded = JsonCalibrationStore(path).get("field-9")

    assert reloaded == model
    assert models.predict(reloaded.model_type, reloaded.params, [-16.0]).mean == pytest.approx(
        models.predict(model.model_type, model.params, [-16.0]).mean
    )


def test_json_store_rejects_corrupt_file(tmp_path):
    path = tmp_path / "calibrations.json"
    path.write_text("{not json")
    with pytest.raises(PersistenceError):
        JsonCalibrationStore(str(path))


def test_json_store_failed_write_leaves_memory_unchanged(tmp_path):
    path = str(tmp_path / "calibrations.json")
    optical, sar = scenario_series()
    model = train_local_calibration("field-9", sar, optical, now=TRAINED_AT)
    store = JsonCalibrationStore(path)

    with patch("pheno_fusion.processing.calibration.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(PersistenceError):
            store.save(model)
    assert store.get("field-9") is None
    assert "field-9" not in JsonCalibrationStore(path)

    store.save(model)
    with patch("pheno_fusion.processing.calibration.os.replace", side_effect=OSError("disk full")):
        with pytest.raises(PersistenceError):
            store.delete("field-9")
    assert store.get("field-9") == model
    assert JsonCalibrationStore(path).get("field-9") == model


if __name__ == '__main__':
    unittest.main()
