from .connections import (
    Connections,
    DistalDendrite,
    Pool,
    ProximalDendrite,
    Segment,
    SegmentActivity,
    Synapse,
)
from .parameters import ConfigurationError, Parameters
from .spatial_pooler import SpatialPooler, combine_input_fields
from .temporal_memory import ComputeCycle, TemporalMemory
from .topology import Topology

__all__ = [
    "ComputeCycle",
    "ConfigurationError",
    "Connections",
    "DistalDendrite",
    "Parameters",
    "Pool",
    "ProximalDendrite",
    "Segment",
    "SegmentActivity",
    "SpatialPooler",
    "Synapse",
    "TemporalMemory",
    "Topology",
    "combine_input_fields",
]
