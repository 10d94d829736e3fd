"""
Content Processors Package

Pure transformations applied by the pipeline.

Modules:
--------
- chunker: Word-based, sentence-aware transcript chunking with overlap
- embedder: Batched, retried embedding generation with cost accounting
"""
