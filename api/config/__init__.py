from .prod_invariants import (
    ProdInvariantViolation as ProdInvariantViolation,
    assert_prod_invariants as assert_prod_invariants,
)

__all__ = [
    "assert_prod_invariants",
    "ProdInvariantViolation",
]
