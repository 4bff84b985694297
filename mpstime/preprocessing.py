import numpy as np
from sklearn.base import BaseEstimator, TransformerMixin
from sklearn.utils.validation import check_is_fitted

class RobustSigmoidTransform(TransformerMixin, BaseEstimator):
    """
    Squashes data into (0, 1) (or (-1, 1) with positive=False) with a sigmoid centred on the
    median and scaled by the interquartile range of the training data.

        xhat = 1 / (1 + exp(-(x - median) / (iqr / k)))

    The statistics are taken over the whole training matrix, not per column.
    """
    def __init__(self, k=1.35, positive=True):
        self.k = k
        self.positive = positive

    def fit(self, X, y=None):
        X = np.asarray(X, dtype=np.float64)
        self.median_ = np.median(X)
        q75, q25 = np.percentile(X, [75, 25])
        iqr = q75 - q25
        # constant data has no spread to scale by
        self.iqr_ = iqr if iqr > 0 else 1.0
        return self

    def transform(self, X):
        check_is_fitted(self, 'median_')
        X = np.asarray(X, dtype=np.float64)
        xhat = 1.0 / (1.0 + np.exp(-(X - self.median_) / (self.iqr_ / self.k)))
        return xhat if self.positive else 2 * xhat - 1

    def inverse_transform(self, Xt):
        check_is_fitted(self, 'median_')
        Xt = np.asarray(Xt, dtype=np.float64)
        xhat = Xt if self.positive else (Xt + 1) / 2
        xhat = np.clip(xhat, np.finfo(np.float64).tiny, 1 - np.finfo(np.float64).eps)
        return self.median_ - (self.iqr_ / self.k) * np.log(1.0 / xhat - 1.0)
