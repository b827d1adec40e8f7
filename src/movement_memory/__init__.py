"""Movement memory and progression engine for logged strength training."""
