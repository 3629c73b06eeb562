"""
Command layer between the ocipkg CLI and the library.

Operations wires settings, the registry session and the local store into one
object per CLI invocation; mappers and printers own exit codes and output.
"""
from .facade import Operations, OpsConfig
from .mappers import exit_code_for, run_and_exit

__all__ = ["Operations", "OpsConfig", "exit_code_for", "run_and_exit"]
