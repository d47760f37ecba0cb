"""Multi-angle enrollment producing one fused template per subject."""
