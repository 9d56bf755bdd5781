"""
Face embedding reduction package.

This package provides modules for:
- records: Record store, labeled pairs and pair generation
- preprocessing: LFW and CPLFW dataset loading
- extractor: TorchScript face embedding extractor
- cache: Content-addressed embedding cache
- verification: Pairwise verification evaluation
- quantization: Affine scalar quantization
- search: Exhaustive and greedy best-subset search
- reduction: Reduction strategies
- importance: Per-dimension importance profiling
- comparative_study: Strategy sweeps producing result tables
- metrics: Evaluation metrics and reporting
- utils: Logging setup and result persistence
"""
