"""Kestrel — Authored Reference Data.

Structural baselines that the live signal is blended against:
  - Countries: name, baseline risk (0-100), event multiplier
    (multiplier < 0.7 marks a media-saturated "high volume" country
    whose protest/news counts are log-dampened)
  - Hotspots: authored points of interest with a static baseline risk
  - Theaters: military theaters, their bases and home operators

A catalog JSON file (see `settings.catalog_path`) may extend or override
any entry: {"countries": {...}, "hotspots": [...], "theaters": [...]}.
"""

import logging

from backend.models import Country, Hotspot, MilitaryBase, Theater

logger = logging.getLogger("kestrel.catalog")

# code: (name, baseline risk, event multiplier)
COUNTRY_BASELINES: dict[str, tuple[str, float, float]] = {
    "UA": ("Ukraine",      50, 0.8),
    "RU": ("Russia",       35, 2.0),
    "CN": ("China",        25, 2.5),
    "US": ("United States", 5, 0.3),
    "GB": ("United Kingdom", 5, 0.5),
    "DE": ("Germany",       5, 0.5),
    "FR": ("France",       10, 0.6),
    "IL": ("Israel",       45, 0.7),
    "PS": ("Palestine",    70, 0.8),
    "IR": ("Iran",         40, 2.0),
    "SY": ("Syria",        50, 0.7),
    "YE": ("Yemen",        50, 0.7),
    "SD": ("Sudan",        55, 0.8),
    "MM": ("Myanmar",      45, 1.5),
    "CD": ("DR Congo",     45, 1.0),
    "SO": ("Somalia",      50, 0.8),
    "ET": ("Ethiopia",     40, 1.2),
    "ML": ("Mali",         40, 1.0),
    "NG": ("Nigeria",      30, 1.0),
    "VE": ("Venezuela",    30, 1.8),
    "KP": ("North Korea",  45, 3.0),
    "PK": ("Pakistan",     35, 1.5),
    "AF": ("Afghanistan",  50, 1.0),
    "HT": ("Haiti",        45, 1.0),
    "LY": ("Libya",        40, 1.0),
    "TW": ("Taiwan",       30, 1.5),
    "SA": ("Saudi Arabia", 20, 2.0),
    "TR": ("Turkey",       20, 1.2),
    "IN": ("India",        20, 0.8),
    "BR": ("Brazil",       15, 0.6),
}

DEFAULT_BASELINE_RISK = 15.0
DEFAULT_EVENT_MULTIPLIER = 1.0

HOTSPOTS: list[Hotspot] = [
    Hotspot(id="kyiv", name="Kyiv", lat=50.45, lon=30.52, baseline_risk=70, country_code="UA"),
    Hotspot(id="donbas", name="Donbas Front", lat=48.0, lon=37.8, baseline_risk=85, country_code="UA"),
    Hotspot(id="gaza", name="Gaza Strip", lat=31.4, lon=34.4, baseline_risk=90, country_code="PS"),
    Hotspot(id="tehran", name="Tehran", lat=35.69, lon=51.39, baseline_risk=60, country_code="IR"),
    Hotspot(id="taipei", name="Taiwan Strait", lat=24.5, lon=119.5, baseline_risk=55, country_code="TW"),
    Hotspot(id="pyongyang", name="Pyongyang", lat=39.03, lon=125.75, baseline_risk=60, country_code="KP"),
    Hotspot(id="khartoum", name="Khartoum", lat=15.5, lon=32.56, baseline_risk=75, country_code="SD"),
    Hotspot(id="sanaa", name="Sana'a / Red Sea", lat=15.37, lon=44.19, baseline_risk=70, country_code="YE"),
    Hotspot(id="moscow", name="Moscow", lat=55.75, lon=37.62, baseline_risk=45, country_code="RU"),
    Hotspot(id="caracas", name="Caracas", lat=10.49, lon=-66.88, baseline_risk=40, country_code="VE"),
]

THEATERS: list[Theater] = [
    Theater(
        id="eastern-europe", name="Eastern Europe", country_code="UA",
        home_operators=["UA", "PL", "RO"],
        bases=[
            MilitaryBase(id="rzeszow", name="Rzeszow-Jasionka", lat=50.11, lon=22.02),
            MilitaryBase(id="constanta", name="Mihail Kogalniceanu", lat=44.36, lon=28.49),
        ],
    ),
    Theater(
        id="middle-east", name="Middle East", country_code="IR",
        home_operators=["IL", "JO", "SA", "AE", "QA"],
        bases=[
            MilitaryBase(id="al-udeid", name="Al Udeid", lat=25.12, lon=51.32),
            MilitaryBase(id="nevatim", name="Nevatim", lat=31.21, lon=35.01),
            MilitaryBase(id="incirlik", name="Incirlik", lat=37.0, lon=35.43),
        ],
    ),
    Theater(
        id="western-pacific", name="Western Pacific", country_code="TW",
        home_operators=["TW", "JP", "PH"],
        bases=[
            MilitaryBase(id="kadena", name="Kadena", lat=26.36, lon=127.77),
            MilitaryBase(id="guam", name="Andersen AFB", lat=13.58, lon=144.93),
        ],
    ),
]


class Catalog:
    """Resolved authored data: built-in tables merged with an optional file."""

    def __init__(self, overrides: dict | None = None):
        self.countries: dict[str, tuple[str, float, float]] = dict(COUNTRY_BASELINES)
        self.hotspots: dict[str, Hotspot] = {h.id: h.model_copy() for h in HOTSPOTS}
        self.theaters: dict[str, Theater] = {t.id: t.model_copy(deep=True) for t in THEATERS}
        if overrides:
            self._apply(overrides)

    def _apply(self, overrides: dict) -> None:
        for code, entry in (overrides.get("countries") or {}).items():
            try:
                name, baseline, multiplier = self.countries.get(
                    code, (code, DEFAULT_BASELINE_RISK, DEFAULT_EVENT_MULTIPLIER)
                )
                country = Country(
                    code=code,
                    name=entry.get("name", name),
                    baseline_risk=entry.get("baseline_risk", baseline),
                    event_multiplier=entry.get("event_multiplier", multiplier),
                )
                self.countries[code] = (country.name, country.baseline_risk, country.event_multiplier)
            except Exception as e:
                logger.warning("Skipping catalog country %s: %s", code, e)
        for raw in overrides.get("hotspots") or []:
            try:
                hotspot = Hotspot(**raw)
                self.hotspots[hotspot.id] = hotspot
            except Exception as e:
                logger.warning("Skipping catalog hotspot %s: %s", raw.get("id"), e)
        for raw in overrides.get("theaters") or []:
            try:
                theater = Theater(**raw)
                self.theaters[theater.id] = theater
            except Exception as e:
                logger.warning("Skipping catalog theater %s: %s", raw.get("id"), e)
        logger.info(
            "Catalog loaded: %d countries, %d hotspots, %d theaters",
            len(self.countries), len(self.hotspots), len(self.theaters),
        )

    def country_reference(self, code: str, name: str | None = None) -> tuple[str, float, float]:
        """(name, baseline risk, event multiplier) with defaults for unknown codes."""
        if code in self.countries:
            return self.countries[code]
        return (name or code, DEFAULT_BASELINE_RISK, DEFAULT_EVENT_MULTIPLIER)
