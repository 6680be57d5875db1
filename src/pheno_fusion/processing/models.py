"""
Small-sample regressors mapping radar backscatter features to NDVI.

Models are stored as data: a type tag ("GPR", "KNN" or "LINEAR") plus a
JSON-serializable params dict. `predict` rebuilds whatever it needs from
the params, so a stored calibration can be reloaded and used without the
training code.
"""

import numpy as np
from typing import Any, Dict, List, NamedTuple, Optional, Sequence, Tuple

from ..errors import CalibrationError

GPR = "GPR"
KNN = "KNN"
LINEAR = "LINEAR"

PIVOT_FLOOR = 1e-10
KNN_EPSILON = 1e-6

Params = Dict[str, Any]


class Prediction(NamedTuple):
    mean: float
    std: Optional[float] = None


def _as_matrix(X: Sequence[Sequence[float]], y: Sequence[float]) -> Tuple[np.ndarray, np.ndarray]:
    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    if X.ndim != 2 or X.shape[0] == 0 or X.shape[0] != y.shape[0]:
        raise CalibrationError(f"Invalid training shapes X={X.shape} y={y.shape}")
    if not (np.all(np.isfinite(X)) and np.all(np.isfinite(y))):
        raise CalibrationError("Training data contains non-finite values")
    return X, y


def _standardize(X: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Z-score columns; zero-variance columns keep a unit scale."""
    means = X.mean(axis=0)
    stds = X.std(axis=0)
    stds[stds == 0] = 1.0
    return (X - means) / stds, means, stds


def gauss_jordan_inverse(A: np.ndarray) -> np.ndarray:
    """
    Invert a square matrix by Gauss-Jordan elimination with partial pivoting.

    Pivots smaller than 1e-10 are floored to 1e-10 instead of failing, so
    near-singular systems still produce a (regularised) answer.

    Raises:
        CalibrationError: If A is not square or the result is not finite.
    """
    A = np.asarray(A, dtype=float)
    if A.ndim != 2 or A.shape[0] != A.shape[1]:
        raise CalibrationError(f"Cannot invert matrix of shape {A.shape}")

    n = A.shape[0]
    aug = np.hstack([A.copy(), np.eye(n)])

    for col in range(n):
        pivot_row = col + int(np.argmax(np.abs(aug[col:, col])))
        if pivot_row != col:
            aug[[col, pivot_row]] = aug[[pivot_row, col]]
        if abs(aug[col, col]) < PIVOT_FLOOR:
            aug[col, col] = PIVOT_FLOOR
        aug[col] = aug[col] / aug[col, col]
        for row in range(n):
            if row != col:
                aug[row] = aug[row] - aug[row, col] * aug[col]

    inverse = aug[:, n:]
    if not np.all(np.isfinite(inverse)):
        raise CalibrationError("Matrix inversion produced non-finite values")
    return inverse


def gauss_jordan_solve(A: np.ndarray, b: Sequence[float]) -> np.ndarray:
    """Solve A x = b using the Gauss-Jordan inverse."""
    return gauss_jordan_inverse(A) @ np.asarray(b, dtype=float)


def _rbf(a: np.ndarray, b: np.ndarray, length_scale: float) -> np.ndarray:
    """RBF kernel matrix between row sets a and b."""
    sq = np.sum((a[:, None, :] - b[None, :, :]) ** 2, axis=2)
    return np.exp(-sq / (2 * length_scale ** 2))


def train_gpr(X, y, length_scale: float = 1.0, noise: float = 0.1) -> Params:
    """
    Gaussian process regression with an RBF kernel.

    Features are z-scored and the target centred; alpha = (K + noise I)^-1 y.

    Returns:
        Params dict: alpha, x_train (normalised), y_mean, means, stds,
        length_scale, noise.
    """
    X, y = _as_matrix(X, y)
    x_norm, means, stds = _standardize(X)
    y_mean = float(y.mean())

    K = _rbf(x_norm, x_norm, length_scale) + noise * np.eye(len(x_norm))
    alpha = gauss_jordan_inverse(K) @ (y - y_mean)

    return {
        'alpha': alpha.tolist(),
        'x_train': x_norm.tolist(),
        'y_mean': y_mean,
        'means': means.tolist(),
        'stds': stds.tolist(),
        'length_scale': length_scale,
        'noise': noise,
    }


def train_knn(X, y, k: int = 5) -> Params:
    """Inverse-distance-weighted KNN on z-scored features."""
    X, y = _as_matrix(X, y)
    _, means, stds = _standardize(X)
    return {
        'training_data': [{'features': row.tolist(), 'ndvi': float(t)} for row, t in zip(X, y)],
        'k': int(k),
        'means': means.tolist(),
        'stds': stds.tolist(),
    }


def train_linear(X, y, ridge: float = 1.0) -> Params:
    """
    Ridge regression via the normal equations on standardised features,
    solved by Gauss-Jordan. Coefficients are returned on the raw scale.
    """
    X, y = _as_matrix(X, y)
    x_norm, means, stds = _standardize(X)
    y_mean = float(y.mean())

    xtx = x_norm.T @ x_norm + ridge * np.eye(x_norm.shape[1])
    xty = x_norm.T @ (y - y_mean)
    coeffs_norm = gauss_jordan_solve(xtx, xty)

    coeffs = coeffs_norm / stds
    intercept = y_mean - float(np.sum(coeffs * means))
    return {'coeffs': coeffs.tolist(), 'intercept': intercept}


def _features(features: Sequence[float], expected: int) -> np.ndarray:
    x = np.asarray(features, dtype=float)
    if x.shape != (expected,):
        raise CalibrationError(f"Model expects {expected} features, got {x.size}")
    return x


class GprPredictor:
    """Rebuilds the training covariance once so batches reuse K^-1."""

    def __init__(self, params: Params):
        self.alpha = np.asarray(params['alpha'], dtype=float)
        self.x_train = np.asarray(params['x_train'], dtype=float)
        self.y_mean = float(params.get('y_mean', 0.0))
        self.means = np.asarray(params.get('means', np.zeros(self.x_train.shape[1])), dtype=float)
        self.stds = np.asarray(params.get('stds', np.ones(self.x_train.shape[1])), dtype=float)
        self.length_scale = float(params.get('length_scale', 1.0))
        self.noise = float(params.get('noise', 0.1))
        K = _rbf(self.x_train, self.x_train, self.length_scale) + self.noise * np.eye(len(self.x_train))
        self.k_inv = gauss_jordan_inverse(K)

    def __call__(self, features: Sequence[float]) -> Prediction:
        x = (_features(features, self.x_train.shape[1]) - self.means) / self.stds
        k_star = _rbf(x[None, :], self.x_train, self.length_scale)[0]
        mean = self.y_mean + float(k_star @ self.alpha)
        variance = 1.0 + self.noise - float(k_star @ self.k_inv @ k_star)
        return Prediction(mean, float(np.sqrt(max(0.0, variance))))


class KnnPredictor:

    def __init__(self, params: Params):
        data = params['training_data']
        self.X = np.asarray([d['features'] for d in data], dtype=float)
        self.y = np.asarray([d['ndvi'] for d in data], dtype=float)
        self.k = int(params.get('k', 5))
        self.means = np.asarray(params.get('means', np.zeros(self.X.shape[1])), dtype=float)
        self.stds = np.asarray(params.get('stds', np.ones(self.X.shape[1])), dtype=float)
        self.x_norm = (self.X - self.means) / self.stds

    def __call__(self, features: Sequence[float]) -> Prediction:
        x = (_features(features, self.X.shape[1]) - self.means) / self.stds
        dist = np.sqrt(np.sum((self.x_norm - x) ** 2, axis=1))
        nearest = np.argsort(dist, kind='stable')[:min(self.k, len(dist))]
        weights = 1.0 / (dist[nearest] + KNN_EPSILON)
        return Prediction(float(np.sum(weights * self.y[nearest]) / np.sum(weights)))


class LinearPredictor:

    def __init__(self, params: Params):
        self.coeffs = np.asarray(params.get('coeffs') or [], dtype=float)
        self.intercept = float(params.get('intercept') or 0.0)

    def __call__(self, features: Sequence[float]) -> Prediction:
        if not len(self.coeffs):
            return Prediction(self.intercept)
        x = _features(features, len(self.coeffs))
        return Prediction(self.intercept + float(np.sum(self.coeffs * x)))


def resolve_model_type(model_type: str, params: Params) -> str:
    """
    The model actually usable from params: the tagged type when its
    parameters are present, else GPR -> KNN -> LINEAR in that order.
    """
    available = []
    if params.get('alpha') and params.get('x_train'):
        available.append(GPR)
    if params.get('training_data'):
        available.append(KNN)
    if model_type in available:
        return model_type
    return available[0] if available else LINEAR


def build_predictor(model_type: str, params: Params):
    """Callable features -> Prediction for a stored model."""
    resolved = resolve_model_type(model_type, params)
    if resolved == GPR:
        return GprPredictor(params)
    if resolved == KNN:
        return KnnPredictor(params)
    return LinearPredictor(params)


def predict(model_type: str, params: Params, features: Sequence[float]) -> Prediction:
    return build_predictor(model_type, params)(features)


def loo_predictions(trainer, X: List[List[float]], y: List[float], **kwargs) -> List[float]:
    """Leave-one-out predictions of `trainer` (train_gpr/train_knn/train_linear)."""
    model_type = {train_gpr: GPR, train_knn: KNN, train_linear: LINEAR}[trainer]
    preds = []
    for i in range(len(X)):
        X_train = X[:i] + X[i + 1:]
        y_train = y[:i] + y[i + 1:]
        params = trainer(X_train, y_train, **kwargs)
        preds.append(predict(model_type, params, X[i]).mean)
    return preds
