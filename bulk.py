from datetime import date
from typing import Iterable, List, Optional

from errors import ReservationError, ValidationError
from log import get_logger
from models import PRIORITY_ORDER, WeeklyTemplate
from schemas import BulkApplyOptions, BulkApplyResult
from semesters import Semester, semester_dates, semester_for
from weekly_templates import DryRunPlan, TemplateEngine, TemplateService

logger = get_logger(__name__)


class BulkApplicationOrchestrator:
    """Applies many templates over a date range and merges their results.

    Templates go critical first, then high, then normal, so higher tiers
    claim their slots before lower tiers meet them as conflicts. The run is
    not atomic as a whole: a failing template is recorded and the rest still
    run, and re-running is safe because a template's own prior bookings count
    as unchanged.
    """

    def __init__(self, templates: TemplateService, engine: TemplateEngine):
        self._templates = templates
        self._engine = engine

    async def _select(
        self, options: BulkApplyOptions, templates: Optional[Iterable[WeeklyTemplate]]
    ) -> List[WeeklyTemplate]:
        if templates is None:
            candidates = await self._templates.list_enabled()
        else:
            candidates = [template for template in templates if template.enabled]
        if options.priority is not None:
            candidates = [template for template in candidates if template.priority == options.priority]
        return sorted(candidates, key=lambda template: PRIORITY_ORDER.index(template.priority))

    async def apply(
        self,
        start: date,
        end: date,
        options: Optional[BulkApplyOptions] = None,
        templates: Optional[Iterable[WeeklyTemplate]] = None,
    ) -> BulkApplyResult:
        options = options or BulkApplyOptions()
        if start > end:
            raise ValidationError("Start date must not be after end date")

        selected = await self._select(options, templates)
        logger.info(
            "bulk_apply_started",
            start=start.isoformat(),
            end=end.isoformat(),
            templates=len(selected),
            mode=options.mode.value,
            dry_run=options.dry_run,
            force_override=options.force_override,
        )

        # Shared by every template of a dry run
        plan = DryRunPlan() if options.dry_run else None
        result = BulkApplyResult()
        for template in selected:
            try:
                partial = await self._engine.apply(
                    template,
                    start,
                    end,
                    options.mode,
                    force_override=options.force_override,
                    dry_run=options.dry_run,
                    plan=plan,
                )
            except ReservationError as exc:
                logger.error("template_apply_failed", template_id=template.id, error=str(exc))
                result.templates += 1
                result.errors.append(f"{template.name}: {exc}")
                continue
            result.merge(partial)

        logger.info(
            "bulk_apply_finished",
            applied=result.applied,
            overridden=result.overridden,
            relocated=result.relocated,
            skipped=result.skipped,
            unchanged=result.unchanged,
            conflicts=len(result.conflicts),
            errors=len(result.errors),
        )
        return result

    async def apply_semester(
        self, academic_year: int, semester: Semester, options: Optional[BulkApplyOptions] = None
    ) -> BulkApplyResult:
        start, end = semester_dates(semester, academic_year)
        return await self.apply(start, end, options)

    async def apply_current_semester(
        self, options: Optional[BulkApplyOptions] = None, today: Optional[date] = None
    ) -> BulkApplyResult:
        academic_year, semester = semester_for(today)
        return await self.apply_semester(academic_year, semester, options)
