"""通用工具函数。"""
from __future__ import annotations

import json
import re
from datetime import datetime, UTC


def utcnow() -> datetime:
    """返回当前 UTC 时间（无时区信息，兼容 PostgreSQL TIMESTAMP WITHOUT TIME ZONE）。"""
    return datetime.now(UTC).replace(tzinfo=None)


def extract_json(text: str) -> dict:
    """从模型响应中提取 JSON 对象，支持代码块、前后缀文字以及截断 JSON 的修复。"""
    text = text.strip()

    # 代码块可能出现在响应中间（例如 "Here is my analysis:\n```json ...```"）
    fenced = re.search(r"```(?:json)?\s*([\s\S]*?)```", text)
    if fenced:
        text = fenced.group(1).strip()
    elif text.startswith("```"):
        # 只有开头的 ``` 没有结尾（响应被截断）
        lines = text.split("\n")[1:]
        text = "\n".join(lines).strip()

    try:
        data = json.loads(text)
        if isinstance(data, dict):
            return data
    except json.JSONDecodeError:
        pass

    start = text.find("{")
    if start == -1:
        raise ValueError("No JSON object found in model response")

    end = text.rfind("}")
    if end == -1 or end <= start:
        json_text = text[start:]
    else:
        json_text = text[start : end + 1]

    for fix_func in [
        lambda x: x,
        _fix_common_json_errors,
        _try_fix_incomplete_json,
        lambda x: _try_fix_incomplete_json(_fix_common_json_errors(x)),
    ]:
        try:
            data = json.loads(fix_func(json_text))
            if isinstance(data, dict):
                return data
        except (json.JSONDecodeError, ValueError):
            continue

    raise ValueError(f"Unable to parse JSON from model response: {json_text[:200]}...")


def _fix_common_json_errors(text: str) -> str:
    """修复模型生成 JSON 的常见错误。"""
    # 注释
    text = re.sub(r"//[^\n]*", "", text)
    text = re.sub(r"/\*.*?\*/", "", text, flags=re.DOTALL)

    # 尾随逗号
    text = re.sub(r",\s*]", "]", text)
    text = re.sub(r",\s*}", "}", text)

    # 换行处缺少逗号
    text = re.sub(r'"\s*\n\s*"', '",\n"', text)
    text = re.sub(r"}\s*\n\s*{", "},\n{", text)
    text = re.sub(r"]\s*\n\s*\[", "],\n[", text)
    text = re.sub(r'}\s*\n\s*"', '},\n"', text)
    text = re.sub(r']\s*\n\s*"', '],\n"', text)
    text = re.sub(r'(\d)\s*\n\s*"', r'\1,\n"', text)
    text = re.sub(r'(true|false|null)\s*\n\s*"', r'\1,\n"', text)

    return text


def _try_fix_incomplete_json(text: str) -> str:
    """闭合被截断的字符串和括号。"""
    stack: list[str] = []
    in_string = False
    escape_next = False

    for char in text:
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if char in "{[":
            stack.append(char)
        elif char in "}]" and stack:
            stack.pop()

    if in_string:
        text += '"'
    text = re.sub(r",\s*$", "", text)

    for opener in reversed(stack):
        text += "}" if opener == "{" else "]"

    return text
