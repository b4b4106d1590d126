"""Sandbox-side entry points, one module per agent backend.

Each module is launched by the controller as ``python3 -m <module>`` and
reads its configuration from the environment (see DriverSettings).
"""
