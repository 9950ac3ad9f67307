"""
PCB Defect Classification Pipeline
==================================

Training system that:

1. Scans a YOLO-formatted dataset (``images/`` + ``labels/``) into flat
   ``(image_path, class_name)`` samples, one per annotation line.
2. Picks a Keras architecture profile from a fallback ladder (standard →
   compatibility → simplified) and constructs a trainer for it.
3. Assembles label-encode → image-load → classify → label-decode stages
   and fits them on the training split with early stopping on validation.
4. Evaluates on validation / test (confusion matrix, per-class log loss).
5. Saves the fitted pipeline as a bundle and serves single-image predictions.

Package layout
--------------
config.py     – ``DatasetConfig`` / ``TrainingProfile`` / ``RuntimeConfig``, paths, YAML loading.
errors.py     – Exception taxonomy shared by every stage.
data.py       – Sample scanner: YOLO split directory → ``SampleSet``.
backend.py    – Hardware detection and the profile fallback ladder.
train.py      – Keras model building, trainer construction and fitting.
pipeline.py   – Stage chain builder and the fitted-pipeline bundle.
evaluate.py   – Metrics, console report, metrics.json + confusion matrix plot.
predict.py    – Single-image prediction result and formatting.
runner.py     – End-to-end orchestrator (scan → init → build → fit → evaluate).
cli.py        – Command-line entry point.
"""

__version__ = "0.1.0"
