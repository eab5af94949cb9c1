from smartlink.db.repositories.links import LinksRepository
from smartlink.db.repositories.clicks import ClicksRepository
from smartlink.db.repositories.conversions import ConversionsRepository
from smartlink.db.repositories.workflow_runs import WorkflowRunsRepository
from smartlink.db.repositories.dead_letters import DeadLettersRepository
