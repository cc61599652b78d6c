"""
压缩模块
"""

from seacomm_agent.compression.pipeline import (
    FRAME_OVERHEAD,
    METHODS,
    CompressionConstraints,
    CompressionPipeline,
    EncodedFrame,
    pack_frame,
    unpack_frame,
)
from seacomm_agent.compression.preprocess import (
    drop_nulls,
    preprocess,
    reduce_precision,
    shorten_keys,
)

__all__ = [
    "FRAME_OVERHEAD",
    "METHODS",
    "CompressionConstraints",
    "CompressionPipeline",
    "EncodedFrame",
    "pack_frame",
    "unpack_frame",
    "drop_nulls",
    "preprocess",
    "reduce_precision",
    "shorten_keys",
]
