"""Shared configuration, primitives and the cooperative scheduling contract."""
