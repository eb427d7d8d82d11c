"""
Briques transverses: erreurs, annulation, throttle, stores clé-valeur, logging.
"""
