"""Query-based extractor reading a step's rows from the source organisation."""

import logging
from typing import Iterator, Optional, Sequence

from ..clients.base import PlatformClient
from ..clients.query import selection_queries
from ..errors import DataError
from ..models.record import SourceRow
from ..models.template import ExtractSpec
from .base import BaseExtractor

logger = logging.getLogger(__name__)


class QueryExtractor(BaseExtractor):
    """Runs a step's extract query, restricted to an optional caller selection."""

    def __init__(
        self,
        client: PlatformClient,
        extract: ExtractSpec,
        selection_ids: Optional[Sequence[str]] = None,
    ):
        """
        Initialize the extractor.

        Args:
            client: Source organisation client
            extract: The step's extract specification
            selection_ids: Source ids the caller selected for this step's
                selection key; None means no restriction
        """
        super().__init__(extract.object_type)
        self.client = client
        self.extract_spec = extract
        self.selection_ids = selection_ids

    def stream(self) -> Iterator[SourceRow]:
        seen = set()
        for spec in selection_queries(self.extract_spec, self.selection_ids):
            for raw in self.client.query(spec):
                try:
                    row = SourceRow.from_platform(self.object_type, raw, self.extract_spec.fields)
                except DataError as e:
                    logger.warning(f"Skipping malformed {self.object_type} row: {e}")
                    self.add_error(e.message, raw)
                    continue
                if row.source_id in seen:
                    continue
                seen.add(row.source_id)
                yield row
