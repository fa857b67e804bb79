# feed.py
"""Reader feed composition: articles with advertisements interleaved."""
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Union

import config


@dataclass(frozen=True)
class ArticleItem:
    article: Any
    kind = "article"


@dataclass(frozen=True)
class AdItem:
    ad: Any
    kind = "ad"


FeedItem = Union[ArticleItem, AdItem]


def ad_slot(index: int, first_slot: Optional[int] = None, interval: Optional[int] = None) -> int:
    """Target display index of the index-th ad (2, 7, 12, ... by default)."""
    if first_slot is None:
        first_slot = config.FEED_FIRST_AD_SLOT
    if interval is None:
        interval = config.FEED_AD_INTERVAL
    return first_slot + index * interval


def compose(articles: Sequence[Any], ads: Sequence[Any]) -> List[FeedItem]:
    """Merge an ordered article list with ads into one display sequence.

    Ads go in list order, each at its slot in the growing output or at the
    end when the slot is past it. Articles never change relative order.
    """
    feed: List[FeedItem] = [ArticleItem(a) for a in articles]
    for i, ad in enumerate(ads):
        feed.insert(min(ad_slot(i), len(feed)), AdItem(ad))
    return feed


def is_lead(feed: Sequence[FeedItem], position: int) -> bool:
    # only an article can take the featured layout
    return position == 0 and bool(feed) and isinstance(feed[0], ArticleItem)


def lead_item(feed: Sequence[FeedItem]):
    return feed[0] if is_lead(feed, 0) else None
