"""
Export processing strategies applied between fetch and write.
"""
import logging
from abc import ABC, abstractmethod
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from feedflow.core.exceptions import CoercionError
from feedflow.domain.imports.options import clean_param_key
from feedflow.domain.imports.transformers import DEFAULT_REGISTRY

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Predicate = Callable[[Record], bool]

OPERATION_ID_FIELD = "fileOperationId"
FILTER_DATE_FORMAT = "%Y-%m-%d"


class ExportStrategy(ABC):
    strategy_id: str = ""
    display_name: str = ""

    @abstractmethod
    def process(self, records: List[Record], fields: Sequence[str], params: Mapping[str, Any]) -> List[Record]:
        """
        Return the records to write, in output order.

        Exports call this once per fetched partition, so a strategy only
        sees the rows of the current partition.
        """


class SimpleExportStrategy(ExportStrategy):
    strategy_id = "simple"
    display_name = "Direct export"

    def process(self, records, fields, params):
        return records


def _to_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return DEFAULT_REGISTRY.get("number").transform(value, {})
    except CoercionError:
        return None


def _to_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip(), FILTER_DATE_FORMAT).date()
    except ValueError:
        return None


def _parse_bound(raw: Any, parser: Callable[[Any], Any], name: str) -> Any:
    if raw is None or str(raw).strip() == "":
        return None
    parsed = parser(raw)
    if parsed is None:
        logger.warning("Ignoring invalid %s filter value: %s", name, raw)
    return parsed


def _range_predicate(field_name: str, parser: Callable[[Any], Any], low: Any, high: Any) -> Predicate:
    def predicate(row: Record) -> bool:
        value = parser(row.get(field_name))
        if value is None:
            return False
        if low is not None and value < low:
            return False
        if high is not None and value > high:
            return False
        return True
    return predicate


def _parse_operation_ids(raw: Any) -> List[str]:
    if raw is None:
        return []
    if isinstance(raw, (list, tuple, set)):
        return [str(item).strip() for item in raw if str(item).strip()]
    return [part.strip() for part in str(raw).split(",") if part.strip()]


class FilteredExportStrategy(ExportStrategy):
    """
    Keeps records matching every configured criterion.

    Recognised params (camelCase or snake_case):
        text_field / text_value: case-insensitive substring match.
        numeric_field / min_value / max_value: inclusive numeric range.
        date_field / from_date / to_date: inclusive range, dates as ``yyyy-MM-dd``.
        import_operations: comma separated operation ids that produced the rows.

    A record missing the filtered field never matches that criterion.
    Malformed bounds are ignored with a warning.
    """

    strategy_id = "filtered"
    display_name = "Filtered export"

    def build_predicates(self, params: Mapping[str, Any]) -> List[Predicate]:
        params = {clean_param_key(key): value for key, value in params.items()}
        predicates: List[Predicate] = []

        text_field = params.get("text_field")
        text_value = str(params.get("text_value") or "").lower()
        if text_field and text_value:
            predicates.append(lambda row: text_value in str(row.get(text_field) or "").lower())

        numeric_field = params.get("numeric_field")
        if numeric_field:
            min_value = _parse_bound(params.get("min_value"), _to_number, "minimum")
            max_value = _parse_bound(params.get("max_value"), _to_number, "maximum")
            if min_value is not None or max_value is not None:
                predicates.append(_range_predicate(numeric_field, _to_number, min_value, max_value))

        date_field = params.get("date_field")
        if date_field:
            from_date = _parse_bound(params.get("from_date"), _to_date, "start date")
            to_date = _parse_bound(params.get("to_date"), _to_date, "end date")
            if from_date is not None or to_date is not None:
                predicates.append(_range_predicate(date_field, _to_date, from_date, to_date))

        operation_ids = set(_parse_operation_ids(params.get("import_operations")))
        if operation_ids:
            predicates.append(lambda row: str(row.get(OPERATION_ID_FIELD) or "") in operation_ids)

        return predicates

    def process(self, records, fields, params):
        predicates = self.build_predicates(params or {})
        if not records or not predicates:
            return records
        result = [row for row in records if all(predicate(row) for predicate in predicates)]
        logger.debug("Filtered export partition: kept %d of %d", len(result), len(records))
        return result


STRATEGIES: Dict[str, ExportStrategy] = {
    strategy.strategy_id: strategy for strategy in (SimpleExportStrategy(), FilteredExportStrategy())
}


def get_strategy(strategy_id: Optional[str]) -> ExportStrategy:
    key = (strategy_id or SimpleExportStrategy.strategy_id).strip().lower()
    try:
        return STRATEGIES[key]
    except KeyError:
        raise ValueError(f"Unknown export strategy '{strategy_id}'. Available: {', '.join(STRATEGIES)}") from None
