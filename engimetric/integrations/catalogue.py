"""Known integrations and their settings fields.

Every integration a team can configure is declared here, whether or not an
adapter exists for it yet. New teams get a default settings entry per item.
"""

from engimetric.integrations.base import IntegrationField, IntegrationMetadata

GITHUB = IntegrationMetadata(
    name="GitHub",
    fields=[
        IntegrationField(key="token", type="secret", required=True, encrypted=True, label="token"),
        IntegrationField(key="org", required=True, label="organization"),
    ],
    metric_keys=["merges", "reviews"],
)

JIRA = IntegrationMetadata(
    name="Jira",
    fields=[
        IntegrationField(key="domain", type="url", required=True, label="domain"),
        IntegrationField(key="token", type="secret", required=True, encrypted=True, label="token"),
    ],
    metric_keys=["issues_closed", "story_points"],
)

GOOGLE = IntegrationMetadata(
    name="Google",
    fields=[
        IntegrationField(key="client_id", required=True, label="client id"),
        IntegrationField(key="client_secret", type="secret", required=True, encrypted=True, label="client secret"),
    ],
    metric_keys=["meetings"],
)

ZOOM = IntegrationMetadata(
    name="Zoom",
    fields=[
        IntegrationField(key="api_key", required=True, label="API key"),
        IntegrationField(key="api_secret", type="secret", required=True, encrypted=True, label="API secret"),
    ],
    metric_keys=["meetings"],
)

INTEGRATION_CATALOGUE: dict[str, IntegrationMetadata] = {
    metadata.name: metadata for metadata in (GITHUB, JIRA, GOOGLE, ZOOM)
}

# Never summed into the per-month summary.
DEFAULT_NON_ADDITIVE_METRICS = frozenset({"changes"})


def non_additive_metrics() -> frozenset[str]:
    names = set(DEFAULT_NON_ADDITIVE_METRICS)
    for metadata in INTEGRATION_CATALOGUE.values():
        names.update(metadata.non_additive_metrics)
    return frozenset(names)


def build_default_settings() -> dict[str, dict[str, object]]:
    """Settings blob written when a team is created: every integration disabled, fields blank."""
    return {
        name: {"enabled": False, **{field.key: "" for field in metadata.fields}}
        for name, metadata in INTEGRATION_CATALOGUE.items()
    }
