"""
DeepLoom Studio - Pipeline de compilation.

Modules:
- skeleton: regroupement des segments en phases
- orchestrator: passes decomposition → sense → alignment → layout par phase
- rehydrator: assemblage déterministe des PhaseView
- validator: réparation par phase + contrôles globaux du packet
- compiler: pipeline complet, progression et télémétrie
"""

from deeploom.studio.compiler import PacketCompiler
from deeploom.studio.models import CanonicalSegment, Packet, PhaseView, SourceRef
from deeploom.studio.sources import InMemorySegmentSource, ISegmentSource

__all__ = [
    "PacketCompiler",
    "CanonicalSegment",
    "Packet",
    "PhaseView",
    "SourceRef",
    "InMemorySegmentSource",
    "ISegmentSource",
]
