"""
Target compiler abstraction.

Compilers implement the native-to-WebAssembly step for one target:
- WasmPackCompiler: invokes wasm-pack for the target's output format
"""
