"""Single-turn agents that turn a task summary into display text."""

import structlog

from agents.prompts import FRAGMENT_TITLE_PROMPT, RESPONSE_PROMPT
from agents.utils import LLMClient, parse_agent_output
from config import settings
from workflow.runner import StepContext

logger = structlog.get_logger()

TITLE_STEP = "fragment-title-generator"
RESPONSE_STEP = "response-generator"


class OutputFinalizers:
    """Title and response generators run after the network finishes.

    Attributes:
        llm_client: Client used for both generators.
        model: Model name passed on every call.
    """

    def __init__(self, llm_client: LLMClient, model: str | None = None) -> None:
        self.llm_client = llm_client
        self.model = model or settings.finalizer_model

    async def _single_turn(self, agent_id: str, system_prompt: str, summary: str) -> str:
        response = await self.llm_client.call(
            messages=[
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": summary},
            ],
            model=self.model,
            agent_id=agent_id,
        )
        return parse_agent_output(response.as_messages())

    async def generate_title(self, summary: str, step: StepContext) -> str:
        """Short title-cased label for the fragment."""

        async def call() -> str:
            return await self._single_turn("fragment-title-generator", FRAGMENT_TITLE_PROMPT, summary)

        title = await step.run(TITLE_STEP, call)
        logger.debug("fragment_title_generated", title=title)
        return title

    async def generate_response(self, summary: str, step: StepContext) -> str:
        """One to three casual sentences describing what was built."""

        async def call() -> str:
            return await self._single_turn("response-generator", RESPONSE_PROMPT, summary)

        return await step.run(RESPONSE_STEP, call)
