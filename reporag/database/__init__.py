"""Run registry and saga step ledger persistence."""
