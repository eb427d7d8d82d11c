"""
DeepLoom - Compilateur de packets d'étude
=========================================

Segments pali (+ traduction de référence) → packet annoté pour le viewer:
morphologie par mot, sens multiples, alignement anglais ↔ pali, layout.
"""

__version__ = "0.5.0"
