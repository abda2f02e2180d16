from typing import Dict, Optional, Sequence
import structlog

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import HumanMessage, SystemMessage

from vulnpatcher.domain.models.code_context import RelevantContext
from vulnpatcher.domain.models.workflow_state import Vulnerability, VulnerabilityMatch, WorkflowContext
from .base_subagent import AgentInterface, BaseSubAgent
from . import prompts

logger = structlog.get_logger(__name__)


class ChatModelSubAgent(BaseSubAgent):
    """Role backed by a LangChain chat model with a fixed system prompt"""

    def __init__(self, name: str, description: str, model: BaseChatModel, system_prompt: str):
        super().__init__(name, description)
        self.model = model
        self.system_prompt = system_prompt

    async def process(self, prompt: str) -> str:
        self.update_activity()

        response = await self.model.ainvoke([
            SystemMessage(content=self.system_prompt),
            HumanMessage(content=prompt)
        ])

        content = response.content
        if isinstance(content, list):
            # Multi-part responses carry text blocks alongside other parts
            content = "".join(
                part if isinstance(part, str) else part.get("text", "")
                for part in content
            )

        logger.debug("Role answered", role=self.name, prompt_length=len(prompt), response_length=len(content))
        return content


class LangChainAgents(AgentInterface):
    """AgentInterface implementation with one chat model per role.

    Roles without a dedicated model in ``role_models`` use ``default_model``.
    Role keys: planner, fixer, reviewer, validator, synthesizer.
    """

    ROLE_KEYS = ("planner", "fixer", "reviewer", "validator", "synthesizer")

    def __init__(self, default_model: BaseChatModel, role_models: Optional[Dict[str, BaseChatModel]] = None):
        role_models = role_models or {}
        unknown = set(role_models) - set(self.ROLE_KEYS)
        if unknown:
            raise ValueError(f"Unknown agent roles: {sorted(unknown)}")

        def model_for(role: str) -> BaseChatModel:
            return role_models.get(role, default_model)

        self.planner = ChatModelSubAgent(
            "planner", "Plans the fix workflow", model_for("planner"), prompts.PLANNER_SYSTEM
        )
        self.fixer = ChatModelSubAgent(
            "fixer", "Generates secure patches", model_for("fixer"), prompts.FIXER_SYSTEM
        )
        self.reviewer = ChatModelSubAgent(
            "reviewer", "Reviews patches for quality and fit", model_for("reviewer"), prompts.REVIEWER_SYSTEM
        )
        self.validator = ChatModelSubAgent(
            "validator", "Validates security of patches", model_for("validator"), prompts.VALIDATOR_SYSTEM
        )
        self.synthesizer = ChatModelSubAgent(
            "synthesizer", "Builds consensus across roles", model_for("synthesizer"), prompts.CONSENSUS_SYSTEM
        )

    async def plan(
        self,
        vulnerability: VulnerabilityMatch,
        context: WorkflowContext,
        related: Sequence[RelevantContext] = ()
    ) -> str:
        return await self.planner.process(prompts.plan_prompt(vulnerability, context, related))

    async def generate_fix(
        self,
        code: str,
        description: str,
        language: str,
        related: Sequence[RelevantContext] = ()
    ) -> str:
        return await self.fixer.process(prompts.fix_prompt(code, description, language, related))

    async def review_code(self, code: str, description: str, related: Sequence[RelevantContext] = ()) -> str:
        return await self.reviewer.process(prompts.review_prompt(code, description, related))

    async def analyze_security(self, code: str, vulnerability: Vulnerability) -> str:
        return await self.validator.process(prompts.security_prompt(code, vulnerability))

    async def build_consensus(self, fix: str, review: str, validation: str) -> str:
        return await self.synthesizer.process(prompts.consensus_prompt(fix, review, validation))

    def get_roles_info(self):
        return [getattr(self, role).get_info() for role in self.ROLE_KEYS]
