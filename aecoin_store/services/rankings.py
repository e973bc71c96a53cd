import calendar
from datetime import datetime
from typing import Any, Optional

from tortoise import timezone

from .database import HeroSetting, PlayerRanking
from ..utils.logger import logger

SAMPLE_PLAYERS = (
    {"user_id": "player-4", "player_name": "SHADOW KING", "stars": 850, "rank": 4},
    {"user_id": "player-5", "player_name": "VIPER ACE", "stars": 720, "rank": 5},
    {"user_id": "player-6", "player_name": "GHOST RIDER", "stars": 650, "rank": 6},
    {"user_id": "player-7", "player_name": "THUNDER BOLT", "stars": 580, "rank": 7},
    {"user_id": "player-8", "player_name": "IRON WOLF", "stars": 520, "rank": 8},
    {"user_id": "player-9", "player_name": "DARK PHOENIX", "stars": 460, "rank": 9},
    {"user_id": "player-10", "player_name": "STORM BREAKER", "stars": 400, "rank": 10},
)


def current_month_label(now: Optional[datetime] = None) -> str:
    now = now or timezone.now()
    return calendar.month_name[now.month].upper()


def ranking_to_dict(ranking: PlayerRanking) -> dict[str, Any]:
    return {
        "id": ranking.id,
        "userId": ranking.user_id,
        "playerName": ranking.player_name,
        "stars": ranking.stars,
        "rank": ranking.rank,
        "imageUrl": ranking.image_url,
        "updatedAt": ranking.updated_at.isoformat() if ranking.updated_at else None,
    }


def hero_to_dict(setting: HeroSetting) -> dict[str, Any]:
    return {
        "id": setting.id,
        "backgroundImage": setting.background_image,
        "videoThumbnail": setting.video_thumbnail,
        "isActive": setting.is_active,
        "updatedAt": setting.updated_at.isoformat() if setting.updated_at else None,
    }


async def get_leaderboard(limit: int = 10) -> list[PlayerRanking]:
    return await PlayerRanking.all().order_by("rank", "-stars").limit(max(1, limit))


async def upsert_ranking(
    user_id: str,
    player_name: str,
    stars: int,
    rank: int,
    image_url: Optional[str] = None,
) -> PlayerRanking:
    ranking, created = await PlayerRanking.update_or_create(
        defaults={"player_name": player_name, "stars": stars, "rank": rank, "image_url": image_url},
        user_id=user_id,
    )
    return ranking


async def seed_sample_rankings() -> int:
    for player in SAMPLE_PLAYERS:
        await upsert_ranking(**player)
        logger.info(f"Added/Updated: {player['player_name']} (Rank #{player['rank']}, {player['stars']} stars)")
    return len(SAMPLE_PLAYERS)


async def get_active_hero() -> Optional[HeroSetting]:
    return await HeroSetting.filter(is_active=True).order_by("-updated_at", "-id").first()
