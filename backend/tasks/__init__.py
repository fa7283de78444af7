from tasks.order_sweep import OrderSweeper, SweepConfig

__all__ = ["OrderSweeper", "SweepConfig"]
