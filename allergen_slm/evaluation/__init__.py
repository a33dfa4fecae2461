"""
evaluation — dataset loading, per-prediction scoring, batch benchmarking and
result export.
"""
