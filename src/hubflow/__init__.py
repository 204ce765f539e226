"""
hubflow: pipeline execution runtime for semi-structured record batches.

Compiles step graphs into staged execution plans and runs them through
pluggable adapters with throughput control, branch routing, retries and a
dead-letter store for failed records.
"""

__version__ = "0.1.0"
