"""Settings forwarded to the pairwise distance function."""
from dataclasses import dataclass, fields, replace
from typing import Union, Mapping

import numpy as np


# Classes --------------------------------------------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class DTWSettings:
    """
    Defines HOW two series are compared.
    Frozen = Immutable and Hashable (can be used as a cache key).

    A value of ``0`` disables an option, mirroring the "unset" convention used by ``Block``.

    Attributes:
        window: Sakoe-Chiba band half-width. Widened automatically by the length difference.
        max_dist: Abandon and return ``inf`` once every cell of a row exceeds this distance.
        max_step: Disallow single steps whose local distance exceeds this value.
        max_length_diff: Return ``inf`` for series whose lengths differ by more than this.
        penalty: Cost added to every non-diagonal (compression / expansion) step.
        psi: Number of leading / trailing samples that may be skipped for free (psi-relaxation).
        wide_count: Use 64-bit counters and indices for the planner, even when 32 bits would do.

    Examples:
        >>> s = DTWSettings(window=10, psi=2)
        >>> s.params
        (10, inf, inf, 0, 0.0, 2)
    """
    window: int = 0
    max_dist: float = 0.0
    max_step: float = 0.0
    max_length_diff: int = 0
    penalty: float = 0.0
    psi: int = 0
    wide_count: bool = False

    def __post_init__(self):
        for f in fields(self):
            if f.name == 'wide_count': continue
            if (value := getattr(self, f.name)) is None: value = 0
            if value < 0: raise ValueError(f'{f.name} must be non-negative, got {value}')
            if f.type is int and not float(value).is_integer():
                raise ValueError(f'{f.name} must be an integer, got {value}')
            object.__setattr__(self, f.name, f.type(value))
        object.__setattr__(self, 'wide_count', bool(self.wide_count))

    @classmethod
    def from_value(cls, value: Union['DTWSettings', Mapping, None] = None, **overrides) -> 'DTWSettings':
        """
        Builds settings from an existing instance, a mapping of field values or ``None``.

        Args:
            value: The source of the settings.
            **overrides: Fields to replace on top of *value*.

        Returns:
            A ``DTWSettings`` instance.

        Raises:
            TypeError: If *value* is of an unsupported type or a mapping has unknown keys.
        """
        if value is None: settings = cls()
        elif isinstance(value, cls): settings = value
        elif isinstance(value, Mapping): settings = cls(**value)
        else: raise TypeError(f'Cannot build {cls.__name__} from {type(value).__name__}')
        return replace(settings, **overrides) if overrides else settings

    @property
    def params(self) -> tuple[int, float, float, int, float, int]:
        """
        The kernel-facing parameter tuple ``(window, max_dist, max_step, max_length_diff, penalty, psi)``.

        Distances are squared here so the kernels can compare them against accumulated squared costs,
        and disabled limits become ``inf``.
        """
        return (
            self.window,
            self.max_dist ** 2 if self.max_dist > 0 else np.inf,
            self.max_step ** 2 if self.max_step > 0 else np.inf,
            self.max_length_diff,
            self.penalty ** 2,
            self.psi
        )

    @property
    def index_dtype(self) -> type:
        """The integer type requested for plan indices."""
        return np.int64 if self.wide_count else np.int32
