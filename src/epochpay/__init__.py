"""epochpay — epoch-batched usage settlement with Merkle-proven claims and staked disputes."""

__version__ = "0.1.0"
