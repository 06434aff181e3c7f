"""Prompt text and data preparation for daily and monthly reports."""

from __future__ import annotations

import json
import re
from collections import Counter
from datetime import date
from typing import Any, Sequence

from .models import Derivative, Reading
from .sensors import SensorType, get_sensor_unit, ordered_sensor_types

SYSTEM_INSTRUCTIONS = (
    "You are an expert air quality analyst. Your task is to generate comprehensive, insightful "
    "reports based on AQI sensor data. Focus on trends, peak events, health implications, and "
    "actionable recommendations. Be professional, data-driven, and accessible to a general audience."
)

FORMATTING_RULES = [
    "- Use markdown formatting with clear headers (##, ###)",
    "- Present data in tables when appropriate",
    "- Keep paragraphs concise and scannable",
    "- Use bold (**text**) for emphasis",
    "- Include bullet points for lists",
]

EXCERPT_LENGTH = 280

# PM10 (µg/m³, 24-h) bands used to label a month.
PM10_BANDS: list[tuple[float, str, str]] = [
    (50.0, "GOOD", "🟢"),
    (100.0, "SATISFACTORY", "🟡"),
    (250.0, "MODERATE", "🟠"),
    (350.0, "POOR", "🔴"),
    (430.0, "VERY POOR", "🟣"),
    (float("inf"), "SEVERE", "🟤"),
]


def _mean(values: Sequence[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def primary_sensor(sensor_types: Sequence[str]) -> str | None:
    if SensorType.PM10.value in sensor_types:
        return SensorType.PM10.value
    ordered = ordered_sensor_types(sensor_types)
    return ordered[0] if ordered else None


def prepare_daily_context(day: date, readings: Sequence[Reading]) -> dict[str, Any]:
    """Hourly averages, per-sensor daily stats and an hour-by-hour context list."""

    hourly: dict[int, dict[str, float]] = {}
    maxima: dict[str, float] = {}
    for reading in readings:
        values: dict[str, float] = {}
        for sensor_type, series in (reading.sensor_data or {}).items():
            if not series:
                continue
            values[sensor_type] = round(_mean(series), 3)
            maxima[sensor_type] = max(maxima.get(sensor_type, float("-inf")), max(series))
        hourly[reading.hour_index] = values

    sensors: dict[str, dict[str, Any]] = {}
    for sensor_type in ordered_sensor_types(maxima.keys()):
        by_hour = {h: v[sensor_type] for h, v in hourly.items() if sensor_type in v}
        peak_hour = max(sorted(by_hour), key=lambda h: by_hour[h])
        sensors[sensor_type] = {
            "avg": round(_mean(list(by_hour.values())), 3),
            "peak": by_hour[peak_hour],
            "peak_hour": peak_hour,
            "max": maxima[sensor_type],
            "unit": get_sensor_unit(sensor_type),
        }

    hourly_context: list[dict[str, Any]] = []
    prev: dict[str, float] | None = None
    for hour in sorted(hourly):
        hourly_context.append({"hour": hour, "values": hourly[hour], "prev_hour_values": prev})
        prev = hourly[hour]

    primary = primary_sensor(list(sensors))
    first = readings[0]
    location = (first.location or {}).get("station") or "Unknown"
    return {
        "date": day.isoformat(),
        "device_id": first.device_id,
        "location": location,
        "hours_covered": len(hourly),
        "primary_sensor": primary,
        "daily_avg": sensors[primary]["avg"] if primary else None,
        "peak_value": sensors[primary]["peak"] if primary else None,
        "peak_hour": sensors[primary]["peak_hour"] if primary else None,
        "sensors": sensors,
        "hourly": hourly_context,
    }


def daily_summary(context: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in context.items() if k != "hourly"}


def build_daily_prompt(context: dict[str, Any]) -> str:
    day = date.fromisoformat(context["date"])
    primary = context["primary_sensor"] or "n/a"
    unit = get_sensor_unit(primary) if context["primary_sensor"] else ""
    avg = context["daily_avg"]
    lines = [
        f"# Daily Log: {day:%d %b %Y}",
        f"**Location**: {context['location']}",
        "",
        "## Summary",
        f"- **Daily Average {primary}**: {avg:.2f} {unit}" if avg is not None else f"- **Daily Average {primary}**: n/a",
        f"- **Peak Hour**: {context['peak_hour']}:00" if context["peak_hour"] is not None else "- **Peak Hour**: n/a",
        "",
        "## Hourly Breakdown",
        "",
        "Generate a detailed hourly analysis based on this data:",
        "```json",
        json.dumps(context["hourly"], indent=2),
        "```",
        "",
        "For each hour, provide:",
        "1. Time (## HH:00)",
        "2. Air Quality Metrics table",
        "3. Smart Analysis with narrative and health implications",
        "",
        *FORMATTING_RULES,
        "",
        "Focus on:",
        "- Identifying pollution spikes and their potential causes",
        "- Hour-to-hour trends and changes",
        f"- Health recommendations based on {primary} levels",
        "- Notable events or patterns throughout the day",
    ]
    return "\n".join(lines)


def extract_excerpt(content: str, limit: int = EXCERPT_LENGTH) -> str:
    """First prose paragraph of a markdown report, trimmed to *limit* characters."""

    for block in re.split(r"\n\s*\n", content or ""):
        text = block.strip()
        if not text or text.startswith(("#", "|", "```", "-", "*")):
            continue
        text = " ".join(text.split())
        if len(text) > limit:
            text = text[: limit - 1].rstrip() + "…"
        return text
    return ""


def status_band(value: float) -> dict[str, str]:
    for upper, label, emoji in PM10_BANDS:
        if value <= upper:
            return {"text": label, "emoji": emoji}
    return {"text": PM10_BANDS[-1][1], "emoji": PM10_BANDS[-1][2]}


def prepare_monthly_context(month_start: date, dailies: Sequence[Derivative]) -> dict[str, Any]:
    days: list[dict[str, Any]] = []
    for daily in dailies:
        summary = daily.summary or {}
        days.append(
            {
                "date": summary.get("date") or daily.period_start.date().isoformat(),
                "location": daily.location or summary.get("location") or "Unknown",
                "primary_sensor": summary.get("primary_sensor"),
                "daily_avg": summary.get("daily_avg"),
                "peak_value": summary.get("peak_value"),
                "peak_event_time": f"{summary['peak_hour']:02d}:00" if summary.get("peak_hour") is not None else None,
                "summary": extract_excerpt(daily.content),
            }
        )
    days.sort(key=lambda d: d["date"])

    with_peak = [d for d in days if d["peak_value"] is not None]
    with_avg = [d for d in days if d["daily_avg"] is not None]
    worst = max(with_peak, key=lambda d: d["peak_value"]) if with_peak else None
    best = min(with_avg, key=lambda d: d["daily_avg"]) if with_avg else None
    monthly_avg = round(_mean([d["daily_avg"] for d in with_avg]), 3) if with_avg else None

    locations = Counter(d["location"] for d in days)
    location = locations.most_common(1)[0][0] if locations else "Unknown"

    return {
        "month": f"{month_start:%Y-%m}",
        "month_name": f"{month_start:%B}",
        "year": month_start.year,
        "location": location,
        "days_covered": len(days),
        "monthly_avg": monthly_avg,
        "overall_status": status_band(monthly_avg) if monthly_avg is not None else {"text": "UNKNOWN", "emoji": "⚪"},
        "worst_day": {"date": worst["date"], "peak_value": worst["peak_value"]} if worst else None,
        "best_day": {"date": best["date"], "daily_avg": best["daily_avg"]} if best else None,
        "daily_summaries": days,
    }


def build_monthly_prompt(context: dict[str, Any]) -> str:
    status = context["overall_status"]
    worst = context["worst_day"]
    best = context["best_day"]
    lines = [
        f"# Monthly Air Quality Summary: {context['month_name']} {context['year']}",
        f"**Location**: {context['location']}",
        f"**Overall Status**: {status['emoji']} {status['text']}",
        "",
    ]
    if worst:
        lines.append(f"- **Worst Day**: {worst['date']} (peak {worst['peak_value']:.2f})")
    if best:
        lines.append(f"- **Best Day**: {best['date']} (average {best['daily_avg']:.2f})")
    lines.extend(
        [
            "",
            "Write a monthly narrative from these daily summaries:",
            "```json",
            json.dumps(context["daily_summaries"], indent=2, ensure_ascii=False),
            "```",
            "",
            "Cover the month's overall trend, the worst and best periods, recurring daily patterns, "
            "and health guidance for the coming month.",
            "",
            *FORMATTING_RULES,
        ]
    )
    return "\n".join(lines)
