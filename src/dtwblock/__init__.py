"""
Top-level module, including resource and optional dependency management.
"""
from functools import cached_property
from importlib import import_module
from pathlib import Path
from concurrent.futures import ThreadPoolExecutor
import atexit
import os
from typing import Callable
from warnings import warn


# Exceptions and Warnings ----------------------------------------------------------------------------------------------
class DTWBlockWarning(Warning): pass
class DependencyWarning(DTWBlockWarning): pass
class AllocationWarning(DTWBlockWarning): pass
class CountWidthWarning(DTWBlockWarning): pass


# Classes --------------------------------------------------------------------------------------------------------------
class Resources:
    """
    Manages global resources like the shared thread pool and optional dependencies.

    Attributes:
        package (str): The package name.
        optional_packages (set[str]): Optional packages that could be imported.
    """
    def __init__(self, *optional_packages: str):
        self.package = Path(__file__).parent.name
        self.optional_packages = set(filter(self._check_module, optional_packages))
        # Register cleanup to run automatically when the program exits
        atexit.register(self.shutdown)

    @cached_property
    def available_cpus(self) -> int:
        """Returns the number of CPUs usable by this process."""
        try: return os.process_cpu_count() or 1
        except AttributeError: return os.cpu_count() or 1

    @cached_property
    def pool(self) -> ThreadPoolExecutor:
        """Returns a shared ThreadPoolExecutor, created on first access."""
        return ThreadPoolExecutor(self.available_cpus, thread_name_prefix=self.package)

    def shutdown(self):
        # Check if 'pool' is in __dict__ (meaning it was initialized)
        if 'pool' in self.__dict__: self.pool.shutdown(wait=False, cancel_futures=True)

    @staticmethod
    def _check_module(module_name: str) -> bool:
        try:
            import_module(module_name)
            return True
        except ImportError: return False

    # __enter__ and __exit__ are still useful for scoped usage (e.g. testing)
    def __enter__(self): return self
    def __exit__(self, exc_type, exc_val, exc_tb): self.shutdown()


# Decorators -----------------------------------------------------------------------------------------------------------
def jit(signature_or_function=None, **options) -> Callable:
    """
    Conditional Numba JIT decorator.

    If 'numba' is installed (checked via RESOURCES), this applies `numba.jit`
    with the provided arguments. Otherwise, it returns the original function unmodified,
    ignoring any compilation options.

    Examples:
        >>> @jit  # Bare usage
        ... def func(): ...

        >>> @jit(nopython=True, nogil=True)  # Configured usage
        ... def func(): ...
    """
    # 1. Fallback: Numba not installed
    if 'numba' not in RESOURCES.optional_packages:
        if callable(signature_or_function):
            return signature_or_function  # Handle bare @jit

        def passthrough(func: Callable) -> Callable:
            return func  # Handle @jit(...)

        return passthrough

    # 2. Apply Numba
    from numba import jit as real_jit
    if callable(signature_or_function):
        return real_jit(signature_or_function)  # Handle bare @jit

    return real_jit(signature_or_function, **options)  # Handle @jit(...)


def is_compiled(func: Callable) -> bool:
    """Returns ``True`` if *func* is a Numba dispatcher rather than a plain Python function."""
    return hasattr(func, 'py_func')


# Constants ------------------------------------------------------------------------------------------------------------
RESOURCES = Resources('numba')
if 'numba' not in RESOURCES.optional_packages:
    warn("numba is not installed; distance kernels will run as (slow) pure Python", DependencyWarning)
