"""
Landholdings - agregação de propriedades rurais por proprietário e
servidor de vector tiles.
"""

__version__ = "0.1.0"
