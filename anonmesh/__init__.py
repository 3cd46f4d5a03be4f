"""anonmesh - secure peer-to-peer messaging and transaction relay over BLE."""

__version__ = "0.1.0"
