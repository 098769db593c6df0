from __future__ import annotations

from esgflow.providers.sources.base import get_adapter, register_adapter, registered_types
from esgflow.providers.sources.document_library import OneDriveAdapter, SharePointAdapter
from esgflow.providers.sources.erp import SapAdapter
from esgflow.providers.sources.feed import RssFeedAdapter
from esgflow.providers.sources.issue_tracker import JiraAdapter
from esgflow.providers.sources.messaging import SlackAdapter, TeamsAdapter
from esgflow.providers.sources.object_storage import AzureBlobAdapter, S3Adapter
from esgflow.providers.sources.relational import RelationalAdapter


# Adapters register at import time; sync dispatch looks them up by connector_type.
register_adapter("aws_s3")(S3Adapter)
register_adapter("azure_blob")(AzureBlobAdapter)
register_adapter("sharepoint")(SharePointAdapter)
register_adapter("onedrive")(OneDriveAdapter)
register_adapter("sap")(SapAdapter)
register_adapter("jira")(JiraAdapter)
register_adapter("slack")(SlackAdapter)
register_adapter("teams")(TeamsAdapter)
register_adapter("rss_feed")(RssFeedAdapter)
register_adapter("postgres", "sqlite")(RelationalAdapter)

__all__ = ["get_adapter", "register_adapter", "registered_types"]
