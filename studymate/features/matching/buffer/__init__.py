"""
In-process candidate buffers for the discovery flow.
"""

from .manager import BufferConfig, BufferMetrics, CandidateBufferManager

__all__ = ["BufferConfig", "BufferMetrics", "CandidateBufferManager"]
