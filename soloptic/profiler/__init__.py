"""Gas profiling engine.

Implements per-line gas attribution with:
  - Bytecode decoding (instruction boundaries, PUSH immediates)
  - Source-map decoding and PC → source line mapping
  - Struct-log trace replay with per-line / per-opcode accounting
  - Randomized invocation fuzzing against a development node
  - Heatmap aggregation with severity buckets
"""
