"""Device-side agent: registers, long-polls for instructions, runs them and reports back."""
