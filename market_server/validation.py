"""
提交数据校验
物品代码: 去除所有空白并转大写, 3-12个字符, 只允许字母和数字 (含中文等多语种文字)
"""
import math

CODE_MIN_LEN = 3
CODE_MAX_LEN = 12


def _upper_char(ch: str) -> str:
    # 逐字符转大写, "ß" -> "SS" 这类会改变长度的映射保持原字符
    upper = ch.upper()
    return upper if len(upper) == 1 else ch


def normalize_code(raw: str) -> str:
    return "".join(_upper_char(ch) for ch in "".join((raw or "").split()))


def _is_letter_or_digit(ch: str) -> bool:
    # 只接受十进制数字 (Nd), 排除 "²" "½" 之类的数值符号
    return ch.isalpha() or ch.isdecimal()


def validate_code(code: str) -> str:
    if not code:
        raise ValueError("invalid data")
    if not CODE_MIN_LEN <= len(code) <= CODE_MAX_LEN:
        raise ValueError("invalid code format")
    if not all(_is_letter_or_digit(ch) for ch in code):
        raise ValueError("invalid code format")
    return code


def validate_price(price) -> float:
    try:
        value = float(price)
    except (TypeError, ValueError):
        raise ValueError("invalid data")
    if not math.isfinite(value) or value <= 0:
        raise ValueError("invalid data")
    return value
