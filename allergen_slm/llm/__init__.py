"""
llm — model session lifecycle, prompt templates, greedy generation loop,
metrics taps and output sanitization.

Engine primitives are provided by llama.cpp (GGUF files) or torch/transformers.
"""
