"""
Regularization parameter records.

Every recognized option is listed with its default and validated once at
construction. from_mapping() reads the registration-parameter keys
(alpha, mu, lambda, alphaLength, ...) and rejects anything it does not know.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping

from .base import ConfigurationError
from .penalties import AREA_PENALTIES


def _from_mapping(cls, values: Mapping[str, Any], aliases: Dict[str, str]):
    known = {f.name for f in fields(cls)}
    kwargs = {}
    for key, value in values.items():
        name = aliases.get(key, key)
        if name not in known:
            raise ConfigurationError(f"Unknown {cls.__name__} option: {key}")
        kwargs[name] = value
    return cls(**kwargs)


@dataclass(frozen=True)
class ElasticParameters:
    """Linear elasticity: S = alpha/2 * hd * |B u|^2 with Lame constants mu, lam."""

    alpha: float = 1.0
    mu: float = 1.0
    lam: float = 0.0

    def __post_init__(self):
        if self.alpha < 0:
            raise ConfigurationError(f"alpha must be non-negative, got {self.alpha}")
        if self.mu < 0:
            raise ConfigurationError(f"mu must be non-negative, got {self.mu}")
        if self.lam + self.mu < 0:
            raise ConfigurationError(f"lambda + mu must be non-negative, got {self.lam + self.mu}")

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> 'ElasticParameters':
        return _from_mapping(cls, values, {'lambda': 'lam'})


@dataclass(frozen=True)
class HyperElasticParameters:
    """
    Hyperelastic regularization weights.

    S(u) = int alpha*alpha_length * |grad u|^2 / 2
               + alpha_area * phi(area change)
               + alpha*alpha_volume * psi(det grad y)

    matrix_free selects the Hessian representation, area_penalty the
    area penalty ('double_well' or 'convex').
    """

    alpha: float = 1.0
    alpha_length: float = 1.0
    alpha_area: float = 1.0
    alpha_volume: float = 1.0
    matrix_free: bool = False
    area_penalty: str = 'double_well'

    def __post_init__(self):
        for name in ('alpha', 'alpha_length', 'alpha_area', 'alpha_volume'):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be non-negative, got {getattr(self, name)}")
        if self.area_penalty not in AREA_PENALTIES:
            raise ConfigurationError(
                f"area_penalty must be one of {sorted(AREA_PENALTIES)}, got {self.area_penalty!r}"
            )

    @property
    def length_weight(self) -> float:
        return self.alpha * self.alpha_length

    @property
    def area_weight(self) -> float:
        return self.alpha_area

    @property
    def volume_weight(self) -> float:
        return self.alpha * self.alpha_volume

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> 'HyperElasticParameters':
        return _from_mapping(cls, values, {
            'alphaLength': 'alpha_length',
            'alphaArea': 'alpha_area',
            'alphaVolume': 'alpha_volume',
            'matrixFree': 'matrix_free',
            'areaPenalty': 'area_penalty',
        })
