"""
Import all strategy modules here so their templates register themselves via @register.
To add a new strategy: create the file, then add the import below.
"""
from strategies import catalog  # noqa: F401
