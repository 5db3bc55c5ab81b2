"""Lymph node motion -- nested mixed-model variance analysis.

Quantifies systematic and random positional variation of pelvic lymph
nodes during radiotherapy from repeated imaging, and reports covariate
effects of location, treatment phase and bladder volume.
"""

__version__ = "0.1.0"
