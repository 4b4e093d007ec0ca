"""Search bootstrap: open the base results page and apply the UI filters.

Every filter is best effort. A selector that no longer matches is logged and
the remaining filters still run; the search simply ends up broader.
"""

import logging
from typing import Optional

from carscout.config import RunConfig, SearchFilters, Settings, settings as default_settings
from carscout.ingest.browsing_session import BrowserTab, simulate_human_behavior

logger = logging.getLogger(__name__)

LOCATION_BUTTON = 'button[data-testid="zipCodeLink"]'
LOCATION_INPUT = 'input[placeholder*="postal"], input[name*="zip"], input[id*="location"]'
DISTANCE_SELECT = 'select[data-testid="select-filter-distance"]'
LOCATION_SUBMIT = 'button:has-text("Update"), button:has-text("Search"), button:has-text("Apply")'

BODY_STYLE_TRIGGER = "#BodyStyle-accordion-trigger"
PICKUP_CHECKBOX = 'button[id*="PICKUP"], label:has-text("Pickup Truck")'
MAKE_TRIGGER = "#MakeAndModel-accordion-trigger"
PRICE_TRIGGER = "#Price-accordion-trigger"
MIN_PRICE_INPUT = 'input[id*="min"][id*="price"], input[placeholder*="Min"]'
MILEAGE_TRIGGER = "#Mileage-accordion-trigger"
MAX_MILEAGE_INPUT = 'input[id*="max"][id*="mileage"], input[placeholder*="Max"]'
DEAL_RATING_TRIGGER = "#DealRating-accordion-trigger"


def make_selectors(make: str) -> list[str]:
    """Candidate selectors for a make checkbox, most specific first."""
    return [
        f'button[id*="{make.upper()}"]',
        f'label:has-text("{make}")',
        f'button[aria-label*="{make}"]',
    ]


def deal_rating_selector(rating: str) -> str:
    return f"#FILTER\\.DEAL_RATING\\.{rating}"


class SearchFilterApplier:
    """Clicks through the filter accordions on a results page."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings

    @property
    def _timeout(self) -> int:
        return self.config.interaction_timeout_ms

    async def apply_location(self, tab: BrowserTab, postal_code: str, radius: int) -> bool:
        try:
            logger.info(f"Setting location: {postal_code}, radius: {radius} km")
            await tab.interact(LOCATION_BUTTON, timeout_ms=self._timeout)
            await tab.wait(1000)
            await tab.interact(LOCATION_INPUT, "fill", self._timeout, value=postal_code)
            await tab.wait(500)
            await tab.interact(DISTANCE_SELECT, "select", self._timeout, value=str(radius))
            await tab.wait(500)
            await tab.interact(LOCATION_SUBMIT, timeout_ms=self._timeout)
            await tab.wait(3000)
            return True
        except Exception as e:
            logger.warning(f"Location filter error: {e} (continuing...)")
            return False

    async def apply_body_types(self, tab: BrowserTab, body_types: list[str]) -> bool:
        if not body_types:
            return True
        try:
            logger.info(f"Setting body types: {', '.join(body_types)}")
            await tab.interact(BODY_STYLE_TRIGGER, timeout_ms=self._timeout)
            await tab.wait(1000)
            for body_type in body_types:
                # SUV / Crossover is preselected by the base URL
                if "Pickup" in body_type:
                    await tab.interact(PICKUP_CHECKBOX, timeout_ms=self._timeout)
                    await tab.wait(500)
            await tab.wait(2000)
            return True
        except Exception as e:
            logger.warning(f"Body type filter error: {e} (continuing...)")
            return False

    async def apply_makes(self, tab: BrowserTab, makes: list[str]) -> list[str]:
        """Returns the makes that were actually selected."""
        if not makes:
            return []
        selected = []
        try:
            logger.info(f"Setting makes: {', '.join(makes)}")
            await tab.interact(MAKE_TRIGGER, timeout_ms=self._timeout)
            await tab.wait(1500)
        except Exception as e:
            logger.warning(f"Make filter error: {e} (continuing...)")
            return selected

        for make in makes:
            for selector in make_selectors(make):
                try:
                    await tab.interact(selector, timeout_ms=self._timeout)
                except Exception:
                    continue
                selected.append(make)
                await tab.wait(300)
                break
            else:
                logger.warning(f"Could not find {make} checkbox")

        await tab.wait(2000)
        return selected

    async def _fill_accordion_input(
        self,
        tab: BrowserTab,
        trigger: str,
        input_selector: str,
        value: int,
        label: str,
    ) -> bool:
        try:
            logger.info(f"Setting {label}: {value}")
            await tab.interact(trigger, timeout_ms=self._timeout)
            await tab.wait(1000)
            await tab.interact(input_selector, "fill", self._timeout, value=str(value))
            await tab.wait(500)
            await tab.interact(input_selector, "press", self._timeout, value="Enter")
            await tab.wait(2000)
            return True
        except Exception as e:
            logger.warning(f"{label} filter error: {e} (continuing...)")
            return False

    async def apply_deal_ratings(self, tab: BrowserTab, ratings: list[str]) -> list[str]:
        if not ratings:
            return []
        selected = []
        try:
            logger.info(f"Setting deal ratings: {', '.join(ratings)}")
            await tab.interact(DEAL_RATING_TRIGGER, timeout_ms=self._timeout)
            await tab.wait(1000)
        except Exception as e:
            logger.warning(f"Deal rating filter error: {e} (continuing...)")
            return selected

        for rating in ratings:
            try:
                await tab.interact(deal_rating_selector(rating), timeout_ms=self._timeout)
                selected.append(rating)
                await tab.wait(300)
            except Exception as e:
                logger.warning(f"Could not click {rating}: {e}")

        await tab.wait(2000)
        return selected

    async def apply_filters(self, tab: BrowserTab, filters: SearchFilters) -> None:
        await self.apply_body_types(tab, filters.body_types)
        await self.apply_makes(tab, filters.makes)
        if filters.min_price is not None:
            await self._fill_accordion_input(tab, PRICE_TRIGGER, MIN_PRICE_INPUT, filters.min_price, "min price")
        if filters.max_mileage is not None:
            await self._fill_accordion_input(
                tab, MILEAGE_TRIGGER, MAX_MILEAGE_INPUT, filters.max_mileage, "max mileage"
            )
        await self.apply_deal_ratings(tab, filters.deal_ratings)

    async def bootstrap(self, tab: BrowserTab, run_config: RunConfig) -> str:
        """
        Load the base search page, apply filters, and return the filtered URL.

        The returned URL has its fragment stripped and is the search context
        later pages are addressed from. Navigation errors propagate.
        """
        base_url = self.config.base_search_url
        logger.info(f"Visiting base page: {base_url}")
        await tab.navigate(
            base_url,
            wait_until="domcontentloaded",
            timeout_ms=self.config.listing_navigation_timeout_ms,
        )
        await tab.wait(self.config.listing_settle_ms)
        await simulate_human_behavior(tab)

        apply_location = run_config.apply_location_filter
        if apply_location and run_config.location_before_filters:
            await self.apply_location(tab, run_config.location, run_config.search_radius)
        await self.apply_filters(tab, run_config.filters)
        if apply_location and not run_config.location_before_filters:
            await self.apply_location(tab, run_config.location, run_config.search_radius)

        await tab.wait(self.config.filter_settle_ms)
        search_context = tab.url.split("#")[0]
        logger.info(f"Filters applied, search context: {search_context}")
        return search_context


def results_page_url(search_context: str, page_number: int, fragment_key: str = "resultsPage") -> str:
    """URL for a results page; page 1 is the search context itself."""
    base = search_context.split("#")[0]
    if page_number <= 1:
        return base
    return f"{base}#{fragment_key}={page_number}"
