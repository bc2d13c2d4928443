from enum import Enum
from typing import Optional

from farehold.cache.search_records import create_cache_key
from farehold.obs.logger import log_event
from farehold.obs.metrics import inc_counter
from farehold.search.addressing import NavigationContext


class NavigationDecision(str, Enum):
    RESUME = "RESUME"          # searchId present, restore from the store
    SEARCH = "SEARCH"          # complete params not yet auto-searched
    DUPLICATE = "DUPLICATE"    # same params as the last auto-search, suppress
    IGNORE = "IGNORE"          # not enough to search with


class AutoSearchDeduplicator:
    """Stops a completed search from re-triggering itself.

    Finishing a search writes its parameters (and id) back into the URL,
    which lands here again; without the remembered key that would loop.
    """

    def __init__(self):
        self.last_key: Optional[str] = None

    def decide(self, navigation: NavigationContext) -> NavigationDecision:
        if navigation.search_id:
            decision = NavigationDecision.RESUME
        elif navigation.params is None:
            decision = NavigationDecision.IGNORE
        else:
            key = create_cache_key(navigation.params)
            if key == self.last_key:
                decision = NavigationDecision.DUPLICATE
            else:
                self.last_key = key
                decision = NavigationDecision.SEARCH

        inc_counter("navigation_decisions_total", {"decision": decision.value})
        log_event("navigation_decided", decision=decision.value, search_id=navigation.search_id)
        return decision

    def forget(self) -> None:
        """Allow the same parameters to auto-search again (explicit user refresh)"""
        self.last_key = None
