"""ddc - diagnostic collector for data processing clusters."""

__version__ = "1.0.0"
