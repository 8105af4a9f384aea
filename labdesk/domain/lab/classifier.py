"""
Result Type Classifier and Flag Computation Engine

Pure functions shared by the backend (every result write) and the
result-entry client (every local edit). Nothing here touches the network
or the database.
"""

from typing import Any, Iterable, List, Optional, Tuple
import enum
import math
import re

from pydantic import BaseModel, ConfigDict

from labdesk.core.exceptions import ValidationError


class ResultMode(str, enum.Enum):
    """Input/validation mode of a child test"""
    NUMERIC = "numeric"
    OPTION = "option"
    BOOLEAN = "boolean"
    TEXT = "text"


class ResultFlag(str, enum.Enum):
    """Abnormality marker persisted next to a numeric value"""
    LOW = "L"
    HIGH = "H"
    NORMAL = "N"


# (positive, negative) members of the two-valued domains labs agree on
BOOLEAN_SENTINEL_PAIRS: List[Tuple[str, str]] = [
    ("positive", "negative"),
    ("reactive", "non reactive"),
    ("detected", "not detected"),
    ("present", "absent"),
    ("yes", "no"),
    ("true", "false"),
]

_PAIR_SEPARATOR = re.compile(r"\s*/\s*")


class ResultShape(BaseModel):
    """Tagged shape of one child test, produced once by `classify_shape`"""
    model_config = ConfigDict(frozen=True)

    mode: ResultMode
    low: Optional[float] = None
    upper: Optional[float] = None
    lowest: Optional[float] = None
    max: Optional[float] = None
    options: Tuple[str, ...] = ()
    boolean_pair: Optional[Tuple[str, str]] = None


def parse_number(value: Any) -> Optional[float]:
    """Parse a real number, returning None instead of raising"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        text = str(value).strip()
        if not text:
            return None
        try:
            number = float(text)
        except ValueError:
            return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def _normalize(text: str) -> str:
    return " ".join(text.replace("-", " ").lower().split())


def _option_names(options: Optional[Iterable[Any]]) -> Tuple[str, ...]:
    names = []
    for option in options or ():
        name = option if isinstance(option, str) else getattr(option, "name", None)
        if name is None and isinstance(option, dict):
            name = option.get("name")
        if name is not None and str(name).strip():
            names.append(str(name).strip())
    return tuple(names)


def _find_boolean_pair(defval: Optional[str], normal_range: Optional[str]) -> Optional[Tuple[str, str]]:
    """Detect a two-valued domain from the display range or the default value"""
    if normal_range:
        parts = _PAIR_SEPARATOR.split(normal_range.strip())
        if len(parts) == 2:
            wanted = {_normalize(parts[0]), _normalize(parts[1])}
            for pair in BOOLEAN_SENTINEL_PAIRS:
                if wanted == set(pair):
                    return pair

    if defval:
        token = _normalize(defval)
        for pair in BOOLEAN_SENTINEL_PAIRS:
            if token in pair:
                return pair

    return None


def classify_shape(child_test: Any) -> ResultShape:
    """Derive the tagged result shape of a child test definition.

    Priority: options, numeric bounds, boolean sentinel pair, free text.
    Never raises; anything unclassifiable degrades to text.
    """
    try:
        options = _option_names(getattr(child_test, "options", None))
        low = parse_number(getattr(child_test, "low", None))
        upper = parse_number(getattr(child_test, "upper", None))
        lowest = parse_number(getattr(child_test, "lowest", None))
        maximum = parse_number(getattr(child_test, "max", None))
        defval = getattr(child_test, "defval", None)
        normal_range = getattr(child_test, "normal_range", None)
    except Exception:
        return ResultShape(mode=ResultMode.TEXT)

    if options:
        return ResultShape(mode=ResultMode.OPTION, options=options, low=low, upper=upper)

    if low is not None and upper is not None:
        return ResultShape(mode=ResultMode.NUMERIC, low=low, upper=upper, lowest=lowest, max=maximum)

    pair = _find_boolean_pair(
        defval if isinstance(defval, str) else None,
        normal_range if isinstance(normal_range, str) else None,
    )
    if pair:
        return ResultShape(mode=ResultMode.BOOLEAN, boolean_pair=pair)

    return ResultShape(mode=ResultMode.TEXT, low=low, upper=upper)


def classify(child_test: Any) -> ResultMode:
    """Input/validation mode of a child test"""
    return classify_shape(child_test).mode


def compute_flag(mode: ResultMode, value: Any, low: Any, upper: Any) -> Optional[str]:
    """Abnormality flag of a value; only numeric values against both bounds are flagged"""
    if ResultMode(mode) is not ResultMode.NUMERIC:
        return None

    number = parse_number(value)
    low_bound = parse_number(low)
    upper_bound = parse_number(upper)
    if number is None or low_bound is None or upper_bound is None:
        return None

    if number < low_bound:
        return ResultFlag.LOW.value
    if number > upper_bound:
        return ResultFlag.HIGH.value
    return ResultFlag.NORMAL.value


def flag_for(shape: ResultShape, value: Any) -> Optional[str]:
    return compute_flag(shape.mode, value, shape.low, shape.upper)


def is_entered(value: Any) -> bool:
    """Empty string and None both mean "not entered" """
    return value is not None and str(value) != ""


def validate_value(shape: ResultShape, value: Any, field: Optional[str] = None) -> Optional[str]:
    """Check a candidate value against its shape and return the value to store.

    Raises ValidationError when the value does not fit. Empty values always
    pass and come back unchanged.
    """
    if value is None:
        return None
    if isinstance(value, bool) and shape.mode is not ResultMode.BOOLEAN:
        raise ValidationError(
            message="Boolean value given for a non-boolean test",
            details={"field": field, "value": str(value), "mode": shape.mode.value}
        )

    text = str(value)
    if text == "":
        return text

    if shape.mode is ResultMode.NUMERIC:
        number = parse_number(text)
        if number is None:
            raise ValidationError(
                message=f"'{text}' is not a number",
                details={"field": field, "value": text, "mode": shape.mode.value}
            )
        if shape.lowest is not None and number < shape.lowest:
            raise ValidationError(
                message=f"{text} is below the lowest plausible value {shape.lowest:g}",
                details={"field": field, "value": text, "lowest": shape.lowest}
            )
        if shape.max is not None and number > shape.max:
            raise ValidationError(
                message=f"{text} is above the maximum plausible value {shape.max:g}",
                details={"field": field, "value": text, "max": shape.max}
            )
        return text.strip()

    if shape.mode is ResultMode.OPTION:
        wanted = text.strip().lower()
        for option in shape.options:
            if option.lower() == wanted:
                return option
        raise ValidationError(
            message=f"'{text}' is not one of the allowed options",
            details={"field": field, "value": text, "options": list(shape.options)}
        )

    if shape.mode is ResultMode.BOOLEAN:
        positive, negative = shape.boolean_pair or BOOLEAN_SENTINEL_PAIRS[0]
        if isinstance(value, bool):
            return positive.title() if value else negative.title()
        token = _normalize(text)
        if token in (positive, "true"):
            return positive.title()
        if token in (negative, "false"):
            return negative.title()
        raise ValidationError(
            message=f"'{text}' is neither {positive} nor {negative}",
            details={"field": field, "value": text, "pair": [positive, negative]}
        )

    return text
