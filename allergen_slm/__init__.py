"""
Allergen SLM — on-device allergen labelling with a small language model.

Free-text ingredient list → model-family prompt → greedy decode → sanitized
allergen label, packaged with latency/throughput metrics.
"""

__version__ = "1.0.0"
__author__ = "Allergen SLM Team"
