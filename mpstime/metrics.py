import numpy as np
import pandas as pd
import torch
from sklearn.metrics import accuracy_score

def predict_proba(mps, dataset):
    """Class probabilities |yhat|^2, normalised per sample."""
    prob = mps.contract(dataset).abs().pow(2)
    return prob / prob.sum(dim=1, keepdim=True)

def mse_loss_acc(mps, dataset):
    """Returns (mean 0.5 * |yhat - onehot|^2, accuracy of argmax |yhat|)."""
    yhat = mps.contract(dataset)
    loss = 0.5 * (yhat - dataset.onehot()).abs().pow(2).sum(dim=1).mean().item()
    preds = yhat.abs().argmax(dim=1)
    acc = accuracy_score(dataset.labels.numpy(), preds.numpy())
    return loss, acc

def kl_divergence(mps, dataset):
    """Mean of -log |yhat_label|^2."""
    yhat = mps.contract(dataset)
    prob = yhat.gather(1, dataset.labels.unsqueeze(1)).abs().pow(2)
    return -torch.log(prob.clamp_min(torch.finfo(prob.dtype).tiny)).mean().item()

class TrainingHistory:
    """Per-sweep metrics. Row 0 is the untrained network, the last row the final normalised one."""
    def __init__(self):
        self.records = []

    def record(self, sweep, mps, datasets, time_taken=None, loss=None):
        """Evaluates mps on every (split, dataset) pair; missing splits are recorded as NaN."""
        row = {'sweep': sweep, 'time_taken': time_taken}
        if loss is not None:
            row['train_cost'] = loss
        for split, dataset in datasets.items():
            if dataset is None:
                row.update({f'{split}_loss': np.nan, f'{split}_acc': np.nan, f'{split}_kl_div': np.nan})
                continue
            mse, acc = mse_loss_acc(mps, dataset)
            row[f'{split}_loss'] = mse
            row[f'{split}_acc'] = acc
            row[f'{split}_kl_div'] = kl_divergence(mps, dataset)
        self.records.append(row)
        return row

    def __len__(self):
        return len(self.records)

    def __getitem__(self, i):
        return self.records[i]

    def column(self, name):
        return [r.get(name, np.nan) for r in self.records]

    def to_frame(self):
        return pd.DataFrame.from_records(self.records).set_index('sweep')

    def summary(self, split='test'):
        frame = self.to_frame()
        best = frame[f'{split}_acc'].idxmax() if frame[f'{split}_acc'].notna().any() else None
        return {
            'final_train_acc': frame['train_acc'].iloc[-1],
            f'final_{split}_acc': frame[f'{split}_acc'].iloc[-1],
            f'best_{split}_acc': frame[f'{split}_acc'].max(),
            'best_sweep': best,
            'total_time': frame['time_taken'].fillna(0).sum(),
        }
