"""
LocalVault core: encrypted local vault storage and offline license/trial validation.
"""

__version__ = "2.0.0"
