"""Reconciliation Pipeline.

An explicit pipeline of ordered stages. Each stage takes the run context
(configuration, store, sources, report), can be validated and run on its own,
and reads the current persisted state rather than anything carried over from
a previous stage. Only the run report travels between stages.

Stages:
    1. ingest: sheets -> patients, cases, children, time series
    2. deduplicate: merge same-day duplicate cases
    3. infer_boundaries: derive or validate case ends
    4. flag_anomalies: mark time-series records whose date fits no case

Security Impact:
    - Every stage is validated before the first write, so a mapping that does
      not fit the sources aborts the run with the store untouched
    - Row-level problems are reported with provenance, never with raw identifiers

Architecture:
    - Application layer: wires domain services to ports
    - Stages receive the StoragePort, so tests inject MemoryStorageAdapter
    - Dry runs execute against an in-memory snapshot of the store
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Optional, Sequence

from pydantic import ValidationError

from reconciler.adapters.storage.memory_adapter import MemoryStorageAdapter
from reconciler.domain.models import (
    Case,
    EndSource,
    Evaluation,
    FluidsRecord,
    PostopOutcome,
    TeamAssignment,
    TimeSeriesRecord,
)
from reconciler.domain.ports import (
    ConfigurationError,
    RowValidationError,
    SourceNotFoundError,
    SourcePort,
    StorageError,
    StoragePort,
    UnsupportedSourceError,
    UpsertOutcome,
)
from reconciler.domain.report import IssueCategory, RunReport
from reconciler.domain.services.anomaly_flagger import AnomalyFlagger
from reconciler.domain.services.boundary_inference import (
    BoundaryInferenceService,
    BoundaryTier,
    validate_explicit_end,
)
from reconciler.domain.services.duplicate_merger import DuplicateMerger
from reconciler.domain.services.entity_resolver import CaseResolution, EntityResolver
from reconciler.domain.services.identifier import normalize
from reconciler.domain.services.temporal import (
    calendar_date,
    parse_float,
    parse_int,
    parse_timestamp,
    parse_yes_no,
)
from reconciler.domain.source_row import SheetMapping, SheetView, SourceRow, is_blank
from reconciler.infrastructure.audit.change_audit_logger import ChangeAuditLogger
from reconciler.infrastructure.config_manager import ReconciliationConfig

logger = logging.getLogger(__name__)

# Roster sheets first so dependent sheets find their patients and cases.
SHEET_TYPE_ORDER = ("patients", "cases", "evaluations", "postop", "timeseries")


@dataclass
class RunContext:
    """Everything a stage needs; nothing else is shared between stages."""

    config: ReconciliationConfig
    storage: StoragePort
    report: RunReport
    sources: list[SourcePort] = field(default_factory=list)
    audit: ChangeAuditLogger = field(default_factory=ChangeAuditLogger)
    sheets: Optional[list[tuple[SheetMapping, SheetView]]] = None

    def __post_init__(self):
        self.audit.set_run_context(run_id=self.report.run_id)


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_team_cell(raw: Any, delimiter: str = ":") -> tuple[Optional[int], Optional[str]]:
    """Split a ``"CODE: Name"`` team cell into (registry code, name)."""
    text = _text(raw)
    if text is None:
        return None, None
    if delimiter in text:
        code_part, name_part = text.split(delimiter, 1)
        code = parse_int(code_part) if code_part.strip().isdigit() else None
        return code, _text(name_part)
    if text.isdigit():
        return int(text), None
    code = parse_int(raw) if isinstance(raw, (int, float)) else None
    return (code, None) if code is not None else (None, text)


def plan_sheets(config: ReconciliationConfig, sources: Sequence[SourcePort]) -> list[tuple[SheetMapping, SheetView]]:
    """Match source sheets to mappings and check their headers.

    Sheets without a mapping are ignored. The result is ordered so roster
    sheets are ingested before the sheets that depend on them.

    Raises:
        ConfigurationError: If a required column or a required sheet is missing,
            or a source cannot be read
    """
    planned = []
    for source in sources:
        try:
            names = source.sheet_names()
            for name in names:
                mapping = config.mapping_for_sheet(name)
                if mapping is None:
                    logger.debug(f"Ignoring unmapped sheet '{name}'")
                    continue
                sheet = source.read_sheet(name)
                sheet.validate(mapping)
                planned.append((mapping, sheet))
        except (SourceNotFoundError, UnsupportedSourceError) as e:
            raise ConfigurationError(str(e), details={"source": e.source}) from e

    found = {mapping.sheet_type for mapping, _ in planned}
    for mapping in config.sheet_mappings:
        if mapping.required_sheet and not any(m is mapping for m, _ in planned):
            raise ConfigurationError(
                f"Required {mapping.sheet_type} sheet not found; expected one of {mapping.sheet_names}",
                details={"sheet_type": mapping.sheet_type, "found_types": sorted(found)},
            )

    def order(item: tuple[SheetMapping, SheetView]):
        mapping, _ = item
        phase = mapping.phase.order if mapping.phase is not None else -1
        return SHEET_TYPE_ORDER.index(mapping.sheet_type), phase

    return sorted(planned, key=order)


# ============================================================================
# Stages
# ============================================================================

class Stage(ABC):
    """One pass of the pipeline."""

    name: str = "stage"

    def validate(self, ctx: RunContext) -> None:
        """Check the stage can run. Must not write.

        Raises:
            ConfigurationError: If the stage cannot run with this configuration
        """

    @abstractmethod
    def run(self, ctx: RunContext) -> RunReport:
        pass


class IngestStage(Stage):
    """Reads every mapped sheet row by row into the canonical model.

    Rows with a missing required value, an unparseable identifier or an
    unparseable timestamp are skipped and reported; everything else is
    written through idempotent upserts.
    """

    name = "ingest"

    def validate(self, ctx: RunContext) -> None:
        ctx.sheets = plan_sheets(ctx.config, ctx.sources)

    def run(self, ctx: RunContext) -> RunReport:
        if ctx.sheets is None:
            ctx.sheets = plan_sheets(ctx.config, ctx.sources)

        resolver = EntityResolver(
            ctx.storage,
            window_days=ctx.config.match_window_days,
            source_timezone=ctx.config.tz,
        )
        handlers = {
            "patients": self._ingest_patient,
            "cases": self._ingest_case,
            "evaluations": self._ingest_evaluation,
            "postop": self._ingest_postop,
            "timeseries": self._ingest_time_series,
        }

        for mapping, sheet in ctx.sheets:
            logger.info(f"Ingesting {mapping.sheet_type} sheet '{sheet.name}' ({len(sheet)} rows) from {sheet.source}")
            handler = handlers[mapping.sheet_type]
            for row in sheet.iter_rows(mapping):
                if all(is_blank(value) for value in row.values.values()):
                    continue
                ctx.report.increment("rows_read")
                try:
                    handler(ctx, resolver, row)
                except RowValidationError as e:
                    ctx.report.skip_row(str(e), e.source or row.provenance)
                except ValidationError as e:
                    reason = "; ".join(err["msg"] for err in e.errors())
                    ctx.report.skip_row(f"Invalid value: {reason}", row.provenance)
                ctx.report.complete_unit(row.provenance)
        return ctx.report

    # ------------------------------------------------------------------
    # Row helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _identify(ctx: RunContext, row: SourceRow, date_field: Optional[str] = None) -> str:
        """Canonical patient key of a row, after any verified identifier correction.

        Corrections are keyed by the calendar date of ``date_field``.
        """
        missing = row.missing_required_values()
        if missing:
            raise RowValidationError(f"Missing required value(s): {missing}", source=row.provenance)
        key, ok = normalize(row.require("identifier"), ctx.config.identifier_delimiter)
        if not ok:
            raise RowValidationError("Unparseable identifier", source=row.provenance, field="identifier")

        if date_field and ctx.config.identifier_corrections:
            raw = row.get(date_field)
            instant, parsed = parse_timestamp(raw, ctx.config.tz) if raw is not None else (None, False)
            day = calendar_date(instant, ctx.config.tz) if parsed else None
            corrected = ctx.config.corrected_identifier(key, day)
            if corrected is not None:
                logger.debug(f"Applied identifier correction at {row.provenance}")
                ctx.report.increment("identifiers_corrected")
                key = corrected
        return key

    @staticmethod
    def _timestamp(ctx: RunContext, row: SourceRow, field_name: str, required: bool = False):
        raw = row.get(field_name)
        if raw is None:
            if required:
                row.require(field_name)
            return None
        instant, ok = parse_timestamp(raw, ctx.config.tz)
        if not ok:
            raise RowValidationError(
                f"Unparseable timestamp in '{field_name}'",
                source=row.provenance,
                field=field_name,
            )
        return instant

    @staticmethod
    def _date(ctx: RunContext, row: SourceRow, field_name: str) -> Optional[date]:
        raw = row.get(field_name)
        if raw is None:
            return None
        instant, ok = parse_timestamp(raw, ctx.config.tz)
        if not ok:
            ctx.report.add_issue(
                IssueCategory.DATA_QUALITY,
                f"Unparseable date in '{field_name}' ignored",
                row.provenance,
            )
            return None
        return calendar_date(instant, ctx.config.tz)

    @staticmethod
    def _resolve_patient(ctx: RunContext, resolver: EntityResolver, row: SourceRow, patient_id: str,
                         attributes: Optional[dict] = None):
        attributes = dict(attributes or {})
        raw = _text(row.get("identifier"))
        if ctx.storage.find_patient(patient_id) is None and normalize(raw, ctx.config.identifier_delimiter)[0] == patient_id:
            # the raw form is kept as first seen; later spellings and corrected rows do not overwrite it
            attributes["raw_identifier"] = raw
        resolution = resolver.resolve_patient(patient_id, attributes)
        ctx.report.count_upsert("patients", resolution.outcome)
        if resolution.patient.identifier_suspicious and resolution.outcome == UpsertOutcome.CREATED:
            ctx.report.add_issue(
                IssueCategory.DATA_QUALITY,
                f"Suspicious identifier: {resolution.patient.identifier_note}",
                row.provenance,
            )
        return resolution

    @staticmethod
    def _record_match(ctx: RunContext, row: SourceRow, resolution: CaseResolution) -> None:
        if resolution.ambiguous:
            ctx.report.increment("ambiguous_matches")
            ctx.report.add_issue(
                IssueCategory.AMBIGUOUS_MATCH,
                f"{resolution.candidates} candidate cases within "
                f"{ctx.config.match_window_days} days; picked the closest start",
                row.provenance,
                record_id=resolution.case.case_id,
            )
        if resolution.outside_window:
            ctx.report.increment("attached_outside_window")
            ctx.report.add_issue(
                IssueCategory.DATA_QUALITY,
                "No case within the date window; attached to the nearest case",
                row.provenance,
                record_id=resolution.case.case_id,
            )

    # ------------------------------------------------------------------
    # Sheet types
    # ------------------------------------------------------------------

    def _ingest_patient(self, ctx: RunContext, resolver: EntityResolver, row: SourceRow) -> None:
        patient_id = self._identify(ctx, row)
        self._resolve_patient(ctx, resolver, row, patient_id, {
            "name": _text(row.get("name")),
            "birth_date": self._date(ctx, row, "birth_date"),
            "sex": _text(row.get("sex")),
            "blood_group": _text(row.get("blood_group")),
            "weight_kg": parse_float(row.get("weight_kg")),
            "height_cm": parse_float(row.get("height_cm")),
            "transplanted": parse_yes_no(row.get("transplanted")),
        })

    def _ingest_case(self, ctx: RunContext, resolver: EntityResolver, row: SourceRow) -> None:
        patient_id = self._identify(ctx, row, "start_at")
        start = self._timestamp(ctx, row, "start_at")
        end = self._timestamp(ctx, row, "end_at")

        attributes = {
            "is_retransplant": parse_yes_no(row.get("is_retransplant")),
            "is_combined": parse_yes_no(row.get("is_combined")),
            "optimal_donor": parse_yes_no(row.get("optimal_donor")),
            "cold_ischemia_minutes": parse_int(row.get("cold_ischemia_minutes")),
            "warm_ischemia_minutes": parse_int(row.get("warm_ischemia_minutes")),
            "weight_kg": parse_float(row.get("weight_kg")),
            "height_cm": parse_float(row.get("height_cm")),
            "diagnosis": _text(row.get("diagnosis")),
            "provenance": _text(row.get("provenance")),
            "observations": _text(row.get("observations")),
        }
        if end is not None:
            if start is not None:
                # overnight cases record the end time on the start date
                check = validate_explicit_end(
                    Case(patient_id=patient_id, start_at=start, end_at=end, end_source=EndSource.EXPLICIT),
                    ctx.config.max_case_duration_minutes,
                )
                if check.ok and check.corrected:
                    ctx.report.increment("explicit_ends_corrected")
                    end = check.end
            attributes["end_at"] = end
            attributes["end_source"] = EndSource.EXPLICIT

        self._resolve_patient(ctx, resolver, row, patient_id)
        resolution = resolver.resolve_case(patient_id, start, attributes)
        ctx.report.count_upsert("cases", resolution.outcome)
        self._record_match(ctx, row, resolution)

        case_id = resolution.case.case_id
        for role, column in row.mapping.team_columns.items():
            code, name = parse_team_cell(row.raw(column), ctx.config.identifier_delimiter)
            if code is None and name is None:
                continue
            assignment = TeamAssignment(case_id=case_id, role=role, clinician_code=code, clinician_name=name)
            ctx.report.count_upsert("team", ctx.storage.upsert_child("team", assignment).unwrap())

    def _attach(self, ctx: RunContext, resolver: EntityResolver, row: SourceRow, patient_id: str, nominal):
        """Case of a dependent row, found according to the sheet's case policy."""
        self._resolve_patient(ctx, resolver, row, patient_id)
        if row.mapping.case_policy == "create":
            resolution = resolver.resolve_case(patient_id, nominal)
        else:
            resolution = resolver.attach_case(patient_id, nominal)
        if resolution.created:
            ctx.report.count_upsert("cases", resolution.outcome)
        self._record_match(ctx, row, resolution)
        return resolution.case

    def _ingest_evaluation(self, ctx: RunContext, resolver: EntityResolver, row: SourceRow) -> None:
        patient_id = self._identify(ctx, row, "date")
        evaluated_at = self._timestamp(ctx, row, "date")
        case = self._attach(ctx, resolver, row, patient_id, evaluated_at)
        evaluation = Evaluation(
            case_id=case.case_id,
            evaluation_date=evaluated_at,
            meld=parse_float(row.get("meld")),
            child=_text(row.get("child")),
            asa=_text(row.get("asa")),
            etiology=_text(row.get("etiology")),
            weight_kg=parse_float(row.get("weight_kg")),
            height_cm=parse_float(row.get("height_cm")),
        )
        ctx.report.count_upsert("evaluations", ctx.storage.upsert_child("evaluations", evaluation).unwrap())

    def _ingest_postop(self, ctx: RunContext, resolver: EntityResolver, row: SourceRow) -> None:
        patient_id = self._identify(ctx, row, "date")
        outcome_at = self._timestamp(ctx, row, "date")
        case = self._attach(ctx, resolver, row, patient_id, outcome_at)
        postop = PostopOutcome(
            case_id=case.case_id,
            outcome_date=outcome_at,
            icu_days=parse_int(row.get("icu_days")),
            ward_days=parse_int(row.get("ward_days")),
            reintervention=parse_yes_no(row.get("reintervention")),
            graft_failure=parse_yes_no(row.get("graft_failure")),
            notes=_text(row.get("notes")),
        )
        ctx.report.count_upsert("postop", ctx.storage.upsert_child("postop", postop).unwrap())

    def _ingest_time_series(self, ctx: RunContext, resolver: EntityResolver, row: SourceRow) -> None:
        patient_id = self._identify(ctx, row, "timestamp")
        timestamp = self._timestamp(ctx, row, "timestamp", required=True)
        case = self._attach(ctx, resolver, row, patient_id, timestamp)
        phase = row.mapping.phase

        observations = {
            name: value for name, column in row.mapping.observation_columns.items()
            if (value := parse_float(row.raw(column))) is not None
        }
        record = TimeSeriesRecord(case_id=case.case_id, phase=phase, timestamp=timestamp, observations=observations)
        ctx.report.count_upsert("time_series", ctx.storage.upsert_time_series(record).unwrap())

        volumes = {
            name: value for name, column in row.mapping.fluid_columns.items()
            if (value := parse_float(row.raw(column))) is not None
        }
        if volumes:
            fluids = FluidsRecord(case_id=case.case_id, phase=phase, timestamp=timestamp, volumes=volumes)
            ctx.report.count_upsert("fluids", ctx.storage.upsert_child("fluids", fluids).unwrap())


class DeduplicateStage(Stage):
    """Merges same-day duplicate cases, one transaction per group."""

    name = "deduplicate"

    def run(self, ctx: RunContext) -> RunReport:
        merger = DuplicateMerger(
            ctx.storage,
            threshold=ctx.config.duplicate_threshold,
            source_timezone=ctx.config.tz,
            audit_logger=ctx.audit,
            run_id=ctx.report.run_id,
        )
        report = ctx.report
        for outcome in merger.run():
            report.increment("duplicate_groups_found")
            if outcome.aborted:
                report.increment("duplicate_groups_aborted")
                report.add_issue(IssueCategory.INTEGRITY, outcome.aborted, record_id=outcome.winner.case_id)
                continue
            if outcome.merged:
                report.increment("duplicate_groups_merged")
                report.increment("cases_deleted", len(outcome.merged))
                report.increment("child_records_deleted", outcome.deleted_children)
            for candidate in outcome.distinct:
                report.increment("cases_kept_distinct")
                report.add_issue(
                    IssueCategory.DATA_QUALITY,
                    f"Same-day case kept as distinct (score {candidate.score:.2f})",
                    record_id=candidate.other.case_id,
                )
            report.complete_unit(f"deduplicate:{outcome.winner.case_id}")
        return report


class BoundaryInferenceStage(Stage):
    """Derives missing case ends and validates explicit ones."""

    name = "infer_boundaries"

    def run(self, ctx: RunContext) -> RunReport:
        service = BoundaryInferenceService(
            ctx.storage,
            phase_priority=ctx.config.phase_priority,
            max_minutes=ctx.config.max_case_duration_minutes,
            audit_logger=ctx.audit,
            run_id=ctx.report.run_id,
        )
        report = ctx.report
        for inference, outcome in service.run():
            report.increment(f"boundaries_{inference.tier.value}")
            if outcome != UpsertOutcome.UNCHANGED:
                report.increment("boundaries_updated")
                if inference.corrected:
                    report.increment("explicit_ends_corrected")
            if inference.tier == BoundaryTier.FALLBACK:
                report.add_issue(IssueCategory.DATA_QUALITY, inference.reason, record_id=inference.case_id)
            elif not inference.ok:
                report.increment("cases_incomplete")
                report.add_issue(
                    IssueCategory.DATA_QUALITY,
                    f"Case end not set: {inference.reason}",
                    record_id=inference.case_id,
                )
            report.complete_unit(f"infer_boundaries:{inference.case_id}")
        return report


class AnomalyFlagStage(Stage):
    """Marks time-series records whose date matches no case of their patient."""

    name = "flag_anomalies"

    def run(self, ctx: RunContext) -> RunReport:
        flagger = AnomalyFlagger(
            ctx.storage,
            source_timezone=ctx.config.tz,
            max_minutes=ctx.config.max_case_duration_minutes,
            audit_logger=ctx.audit,
            run_id=ctx.report.run_id,
        )
        result = flagger.run()
        ctx.report.increment("records_flagged", result.count)
        ctx.report.increment("records_newly_flagged", result.newly_flagged)
        ctx.report.complete_unit("flag_anomalies")
        return ctx.report


def default_stages() -> list[Stage]:
    return [IngestStage(), DeduplicateStage(), BoundaryInferenceStage(), AnomalyFlagStage()]


# ============================================================================
# Pipeline
# ============================================================================

class ReconciliationPipeline:
    """Runs stages in order against one store.

    Configuration errors stop the run before any write. A storage failure
    stops the current stage; the report keeps the last completed unit so a
    retry resumes from a consistent state.

    Example Usage:
        ```python
        ctx = RunContext(config=config, storage=storage, report=RunReport(), sources=[reader])
        report = ReconciliationPipeline().run(ctx)
        print(report.to_dict()["counts"])
        ```
    """

    def __init__(self, stages: Optional[Sequence[Stage]] = None):
        self.stages = list(stages) if stages is not None else default_stages()

    def run(self, ctx: RunContext) -> RunReport:
        report = ctx.report
        try:
            for stage in self.stages:
                stage.validate(ctx)
        except ConfigurationError as e:
            logger.error(f"Configuration error: {str(e)}")
            report.abort(IssueCategory.CONFIGURATION, str(e))
            return report.finish()

        try:
            ctx.storage.initialize_schema().unwrap()
            for stage in self.stages:
                logger.info(f"Running stage: {stage.name}")
                stage.run(ctx)
                report.stages_completed.append(stage.name)
        except StorageError as e:
            logger.error(
                f"Storage failure during {self._current_stage(report)}: {str(e)} "
                f"(last completed unit: {report.last_completed_unit})",
                exc_info=True,
            )
            report.abort(IssueCategory.PERSISTENCE, str(e))

        changes = ctx.audit.summary()
        if changes:
            report.counts.update({f"changes.{key}": count for key, count in changes.items()})
        return report.finish()

    def _current_stage(self, report: RunReport) -> str:
        done = len(report.stages_completed)
        return self.stages[done].name if done < len(self.stages) else "finalization"


def run_pipeline(
    config: ReconciliationConfig,
    storage: StoragePort,
    sources: Sequence[SourcePort],
    dry_run: bool = False,
    stages: Optional[Sequence[Stage]] = None,
) -> RunReport:
    """Run the full pipeline, optionally against a throwaway copy of the store.

    In a dry run the stages write to a MemoryStorageAdapter seeded from
    ``storage.snapshot()``; the real store is only read.
    """
    report = RunReport(dry_run=dry_run, max_issues=config.max_report_errors)
    target = storage
    if dry_run:
        logger.info("Dry run: writes go to an in-memory snapshot of the store")
        try:
            target = MemoryStorageAdapter.from_snapshot(storage.snapshot())
        except StorageError as e:
            logger.error(f"Failed to snapshot the store: {str(e)}", exc_info=True)
            report.abort(IssueCategory.PERSISTENCE, str(e))
            return report.finish()

    ctx = RunContext(config=config, storage=target, report=report, sources=list(sources))
    return ReconciliationPipeline(stages).run(ctx)
