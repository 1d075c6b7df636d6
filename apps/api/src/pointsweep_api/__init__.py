"""Order settlement pipeline for loyalty-point stock redemptions."""
