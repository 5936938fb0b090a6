"""Bonding contracts.

A contract is a read-only, externally supplied document describing what a
valid bonded record looks like for one tier:

    tier: byte
    expectedType: kb
    requiredFields:
      type: string
      index: integer
      frequency: numeric
      atomsUsed: array
    hashAlgorithm: sha256
    numericRanges:
      - field: frequency
        min: 0
        max: 100000

`requiredFields` may also be a plain list of names (any type accepted).
Contracts are keyed by the tier whose atoms are consumed, so the contract
for "bit" validates the bit -> byte bonding.
"""

from __future__ import annotations

import hashlib
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator

from .config import PipelineConfig
from .errors import ConfigError

logger = logging.getLogger(__name__)

# Declared type name -> human label; checked by the validator
FIELD_TYPES = ("any", "string", "number", "integer", "numeric", "array", "object")

DEFAULT_REQUIRED_FIELDS = {
    "type": "string",
    "index": "integer",
    "timestamp": "string",
    "iv": "string",
    "authTag": "string",
    "frequency": "numeric",
    "atomicWeight": "integer",
    "atomsUsed": "array",
    "indices": "object",
}


class NumericRange(BaseModel):
    """Inclusive bounds for one numeric field of the candidate."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    field_name: str = Field(alias="field")
    min: Optional[float] = None
    max: Optional[float] = None


class BondingContract(BaseModel):
    """Validation rules for one tier's bonded output."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    tier: Optional[str] = None
    expected_type: Optional[str] = Field(default=None, alias="expectedType")
    required_fields: Dict[str, str] = Field(default_factory=dict, alias="requiredFields")
    hash_algorithm: Optional[str] = Field(default=None, alias="hashAlgorithm")
    numeric_ranges: List[NumericRange] = Field(default_factory=list, alias="numericRanges")

    @field_validator("required_fields", mode="before")
    @classmethod
    def _normalise_required(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, (list, tuple)):
            return {str(name): "any" for name in value}
        return value

    @field_validator("required_fields")
    @classmethod
    def _check_field_types(cls, value: Dict[str, str]) -> Dict[str, str]:
        unknown = {name: kind for name, kind in value.items() if kind not in FIELD_TYPES}
        if unknown:
            raise ValueError(f"unknown field types {unknown}; expected one of {FIELD_TYPES}")
        return value

    @field_validator("hash_algorithm")
    @classmethod
    def _check_hash_algorithm(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and value.lower() not in hashlib.algorithms_available:
            raise ValueError(f"unsupported hash algorithm {value!r}")
        # shake_* and other extendable-output functions have no fixed hexdigest
        if value is not None and hashlib.new(value.lower()).digest_size == 0:
            raise ValueError(f"hash algorithm {value!r} has no fixed digest length")
        return value.lower() if value else value

    @classmethod
    def default_for(cls, tier: str, expected_type: Optional[str] = None) -> BondingContract:
        """Built-in contract used when no file is configured for a tier."""
        return cls(
            tier=tier,
            expected_type=expected_type,
            required_fields=dict(DEFAULT_REQUIRED_FIELDS),
        )

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> BondingContract:
        """Load a contract from a YAML or JSON document."""
        path = Path(path)
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
            return cls.model_validate(data)
        except (OSError, yaml.YAMLError, PydanticValidationError) as e:
            raise ConfigError(f"Invalid contract {path}: {e}") from e


class ContractRegistry:
    """Contracts for every bondable tier, resolved once at startup."""

    def __init__(self, contracts: Optional[Dict[str, BondingContract]] = None):
        self._contracts: Dict[str, BondingContract] = dict(contracts or {})

    def register(self, tier: str, contract: BondingContract) -> None:
        self._contracts[tier] = contract

    def get(self, tier: str) -> Optional[BondingContract]:
        return self._contracts.get(tier)

    def __contains__(self, tier: str) -> bool:
        return tier in self._contracts

    @classmethod
    def from_config(cls, config: PipelineConfig) -> ContractRegistry:
        registry = cls()
        for tier in config.bondable_tiers:
            next_tier = config.require_next_tier(tier.name)
            if tier.contract_path:
                contract = BondingContract.from_file(tier.contract_path)
                logger.info(f"Loaded contract for tier {tier.name} from {tier.contract_path}")
            else:
                contract = BondingContract.default_for(tier.name, expected_type=next_tier.name)
            registry.register(tier.name, contract)
        return registry
