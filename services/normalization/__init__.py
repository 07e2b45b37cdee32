"""Raw payload to relational normalization.

- `extraction.py`: document/collection probing and value coercion
- `sale.py`: pure mapping into typed records
- `writer.py`: replace-on-write persistence
- `normalizer.py`: one snapshot end to end
"""

from services.normalization.normalizer import NormalizeResult, normalize_snapshot
from services.normalization.sale import NormalizedSale, build_sale

__all__ = ["NormalizeResult", "NormalizedSale", "build_sale", "normalize_snapshot"]
