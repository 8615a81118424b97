"""Application constants."""

USER_AGENT = "geocadastre/0.4 (+cadastral enrichment; contact: configured-email)"
WGS84 = "EPSG:4326"
CATEGORIES = ("cadastral", "zoning", "municipality")
PRIMARY_ROLES = {
    "cadastral": "parcel",
    "zoning": "zoning",
}
SUPPLEMENTAL_ROLES = {
    "cadastral": ("building", "address"),
    "zoning": (),
}
GEOJSON_FORMATS = (
    "application/json",
    "application/geo+json",
    "application/json; subtype=geojson",
    "application/vnd.geo+json",
    "json",
)
METERS_PER_DEGREE = 111_320.0
# Flat scaling used when ranking candidates by reference point.
RANKING_METERS_PER_DEGREE = 111_000.0
EXIT_SUCCESS = 0
EXIT_PARTIAL = 10
EXIT_HARD_FAIL = 20
JSON_LOG_FIELDS = (
    "timestamp",
    "level",
    "run_id",
    "stage",
    "region",
    "category",
    "plot_id",
    "source",
    "event",
    "status",
    "attempt",
    "duration_ms",
    "feature_count",
    "error_code",
    "message",
)
