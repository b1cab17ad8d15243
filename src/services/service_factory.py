"""
Service Factory.

Wires the sync pipeline together once per process from Settings. Every
collaborator is passed in explicitly, so tests can build the same graph
around fakes.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from src.config import Settings, get_settings
from src.db import get_db
from src.services.data_extraction import DoctorInfoExtractor, FieldExtractor, build_backend
from src.services.extraction_pipeline import ExtractionStep
from src.services.platform_client import PlatformClient
from src.services.reconciler import Reconciler
from src.services.sheet_sink import GoogleSheetsSink, TokenCipher
from src.services.sync_orchestrator import SyncOrchestrator


@dataclass
class SyncServices:
    store: Any
    platform: PlatformClient
    sink: GoogleSheetsSink
    extraction_step: ExtractionStep
    reconciler: Reconciler
    orchestrator: SyncOrchestrator

    async def close(self) -> None:
        await self.platform.close()


class ServiceFactory:
    @staticmethod
    def create_sheet_sink(settings: Settings, store: Any) -> GoogleSheetsSink:
        return GoogleSheetsSink(
            store=store,
            cipher=TokenCipher(settings.token_encryption_key),
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            refresh_lookahead_seconds=settings.google_token_refresh_lookahead_seconds,
        )

    @staticmethod
    def create_extraction_step(settings: Settings, store: Any, sink: GoogleSheetsSink) -> ExtractionStep:
        backend = build_backend(settings)
        return ExtractionStep(
            store=store,
            extractor=FieldExtractor(backend),
            sink=sink,
            save_empty_results=settings.extraction_save_empty_results,
            doctor_info_extractor=DoctorInfoExtractor(backend) if settings.legacy_doctor_info_enabled else None,
        )

    @staticmethod
    def create_services(settings: Settings | None = None, store: Any = None) -> SyncServices:
        settings = settings or get_settings()
        store = store if store is not None else get_db()

        platform = PlatformClient(
            base_url=settings.platform_api_url,
            bearer_token=settings.platform_bearer_token,
            timeout=settings.platform_timeout_seconds,
        )
        sink = ServiceFactory.create_sheet_sink(settings, store)
        step = ServiceFactory.create_extraction_step(settings, store, sink)
        reconciler = Reconciler(store, step)
        orchestrator = SyncOrchestrator(
            store=store,
            platform=platform,
            reconciler=reconciler,
            extraction_step=step,
            page_size=settings.sync_page_size,
            backfill_batch_size=settings.backfill_batch_size,
        )
        return SyncServices(
            store=store,
            platform=platform,
            sink=sink,
            extraction_step=step,
            reconciler=reconciler,
            orchestrator=orchestrator,
        )
