"""
novabuild - build orchestrator for hybrid web + WebAssembly applications.

Coordinates native-to-WebAssembly target compilation with the UI bundling
pass and publishes a manifest consumed by the runtime loader.
"""

__version__ = "0.1.0"
