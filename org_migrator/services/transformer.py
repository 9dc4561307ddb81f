"""Transformation engine for converting source rows into target records."""

import logging
import math
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

from dateutil import parser as date_parser

from ..models.migration import IdMap
from ..models.record import SourceRow, TransformedRecord
from ..models.template import FieldMapping, LookupMapping, TransformKind, TransformRules

logger = logging.getLogger(__name__)

TransformFunc = Callable[[Any, Mapping[str, Any], Dict[str, Any]], Any]

TRUE_VALUES = {"true", "yes", "y", "1", "t", "on"}
FALSE_VALUES = {"false", "no", "n", "0", "f", "off", ""}


class TransformEngine:
    """
    Engine for transforming source rows to target format.

    Supports:
    - Built-in value transforms (boolean, number, date, picklist, ...)
    - Custom transforms registered by name
    - Relationship paths in source fields
    - Lookup resolution through a session's id map
    """

    def __init__(self):
        """Initialize the transform engine."""
        self._custom_transforms: Dict[str, TransformFunc] = {}
        self._builtin_transforms = self._register_builtin_transforms()

    def _register_builtin_transforms(self) -> Dict[str, TransformFunc]:
        """Register all built-in transformation functions."""
        return {
            TransformKind.DIRECT.value: self._transform_direct,
            TransformKind.BOOLEAN.value: self._transform_boolean,
            TransformKind.NUMBER.value: self._transform_number,
            TransformKind.DATE.value: self._transform_date,
            TransformKind.PICKLIST.value: self._transform_picklist,
            TransformKind.TRUNCATE.value: self._transform_truncate,
            TransformKind.UPPERCASE.value: self._transform_uppercase,
            TransformKind.LOWERCASE.value: self._transform_lowercase,
            TransformKind.DEFAULT.value: self._transform_default,
        }

    def register_transform(self, name: str, func: TransformFunc) -> None:
        """Register a custom transformation function, selected via options["function"]."""
        self._custom_transforms[name] = func

    def transform_row(
        self,
        row: SourceRow,
        rules: TransformRules,
        object_type: str,
        id_map: Optional[IdMap] = None,
    ) -> TransformedRecord:
        """
        Transform one source row.

        Field-level problems are collected on the returned record rather than
        raised, so one bad value never aborts the rest of the batch.

        Args:
            row: Extracted source row
            rules: Field mappings and lookups of the step
            object_type: Target object type
            id_map: Session id map used to resolve lookups

        Returns:
            TransformedRecord; check `is_valid` before loading
        """
        record = TransformedRecord(source_id=row.source_id, object_type=object_type)

        for mapping in rules.field_mappings:
            self._apply_field_mapping(row, mapping, record)

        for lookup in rules.lookups:
            self._apply_lookup(row, lookup, record, id_map)

        if rules.external_id_target_field:
            record.data[rules.external_id_target_field] = row.source_id

        return record

    def _apply_field_mapping(self, row: SourceRow, mapping: FieldMapping, record: TransformedRecord) -> None:
        source_value = row.get(mapping.source_field)

        try:
            transform_func = self._resolve_transform(mapping)
            value = transform_func(source_value, mapping.options, row.fields)
        except Exception as e:
            # Custom transforms may raise anything; the value fails, not the batch
            record.errors.append(f"{mapping.target_field}: {e}")
            logger.debug(f"Transform error for {row.source_id}.{mapping.target_field}: {e}")
            return

        if value is None and mapping.default_value is not None:
            value = mapping.default_value

        if value is None:
            if mapping.required:
                record.errors.append(
                    f"{mapping.target_field}: required value missing (source field {mapping.source_field})"
                )
            return

        record.data[mapping.target_field] = value

    def _resolve_transform(self, mapping: FieldMapping) -> TransformFunc:
        custom_name = mapping.options.get("function")
        if custom_name:
            func = self._custom_transforms.get(custom_name)
            if func is None:
                raise ValueError(f"Unknown custom transform: {custom_name}")
            return func
        return self._builtin_transforms[mapping.transform.value]

    def _apply_lookup(
        self,
        row: SourceRow,
        lookup: LookupMapping,
        record: TransformedRecord,
        id_map: Optional[IdMap],
    ) -> None:
        parent_source_id = row.get(lookup.source_field)

        if parent_source_id in (None, ""):
            if lookup.fallback_value is not None:
                record.data[lookup.target_field] = lookup.fallback_value
            elif lookup.required:
                record.errors.append(f"{lookup.target_field}: {lookup.source_field} is empty")
            return

        target_id = id_map.resolve(lookup.step, str(parent_source_id)) if id_map else None
        if target_id:
            record.data[lookup.target_field] = target_id
        elif lookup.fallback_value is not None:
            record.data[lookup.target_field] = lookup.fallback_value
            record.warnings.append(
                f"{lookup.target_field}: {parent_source_id} not migrated by '{lookup.step}', used fallback"
            )
        elif lookup.required:
            record.errors.append(
                f"{lookup.target_field}: {lookup.source_field}={parent_source_id} "
                f"was not migrated by step '{lookup.step}'"
            )

    # Built-in transforms: (value, options, row data) -> value

    def _transform_direct(self, value: Any, options: Mapping[str, Any], data: Dict[str, Any]) -> Any:
        return value

    def _transform_boolean(self, value: Any, options: Mapping[str, Any], data: Dict[str, Any]) -> Optional[bool]:
        if value is None or isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        text = str(value).strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
        raise ValueError(f"Cannot interpret {value!r} as a boolean")

    def _transform_number(self, value: Any, options: Mapping[str, Any], data: Dict[str, Any]) -> Any:
        if value is None or value == "":
            return None
        if isinstance(value, bool):
            raise ValueError(f"Cannot interpret {value!r} as a number")
        number = float(str(value).replace(",", "").strip()) if isinstance(value, str) else float(value)
        if not math.isfinite(number):
            raise ValueError(f"Cannot interpret {value!r} as a finite number")
        decimals = options.get("decimals")
        if decimals is not None:
            number = round(number, int(decimals))
            if int(decimals) == 0:
                return int(number)
        if options.get("integer"):
            return int(number)
        return number

    def _transform_date(self, value: Any, options: Mapping[str, Any], data: Dict[str, Any]) -> Optional[str]:
        if value is None or value == "":
            return None
        parsed = value if isinstance(value, datetime) else date_parser.parse(str(value))
        if options.get("format") == "datetime":
            return parsed.isoformat()
        return parsed.date().isoformat()

    def _transform_picklist(self, value: Any, options: Mapping[str, Any], data: Dict[str, Any]) -> Any:
        if value is None:
            return options.get("default")
        mapping = options.get("mapping", {})
        key = str(value)
        if key in mapping:
            return mapping[key]
        if "default" in options:
            return options["default"]
        if options.get("strict"):
            raise ValueError(f"No picklist mapping for {value!r}")
        return value

    def _transform_truncate(self, value: Any, options: Mapping[str, Any], data: Dict[str, Any]) -> Any:
        if value is None:
            return None
        max_length = int(options.get("max_length", 255))
        return str(value)[:max_length]

    def _transform_uppercase(self, value: Any, options: Mapping[str, Any], data: Dict[str, Any]) -> Any:
        return str(value).upper() if value is not None else None

    def _transform_lowercase(self, value: Any, options: Mapping[str, Any], data: Dict[str, Any]) -> Any:
        return str(value).lower() if value is not None else None

    def _transform_default(self, value: Any, options: Mapping[str, Any], data: Dict[str, Any]) -> Any:
        if value is None or value == "":
            return options.get("value")
        return value
