"""AgriChain provenance backend."""
