"""Content planning processor (scripts, plots, scene and frame breakdowns)."""

import logging
from typing import Any, Dict

from ..models import ContentPlanningInput
from ..providers import TextProvider
from ..queue import JobContext
from .common import parse_input, utc_timestamp

logger = logging.getLogger(__name__)


class ContentPlanningProcessor:
    """``content-planning`` jobs; ``source_text`` switches to revision mode."""

    def __init__(self, provider: TextProvider):
        self.provider = provider

    async def __call__(self, ctx: JobContext) -> Dict[str, Any]:
        await ctx.update_progress(10)
        data = parse_input(ContentPlanningInput, ctx.input_data)

        options: Dict[str, Any] = {}
        if data.system_prompt:
            options["system_prompt"] = data.system_prompt

        await ctx.update_progress(30)
        if data.source_text:
            logger.info("Job %s: revising %s", ctx.job_id, data.plan_type)
            content = await self.provider.revise_text(data.prompt, data.source_text, options)
        else:
            logger.info("Job %s: generating %s", ctx.job_id, data.plan_type)
            content = await self.provider.generate_text(data.prompt, options)
        await ctx.update_progress(90)

        return {
            "type": data.plan_type,
            "content": content,
            "prompt": data.prompt,
            "source_text": data.source_text,
            "context": data.context,
            "options": {"plan_type": data.plan_type, **options},
            "generated_at": utc_timestamp(),
        }
