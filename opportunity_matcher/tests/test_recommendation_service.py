"""
Tests for personalised, similar-item and free-text recommendations.
"""

import pytest

from conftest import make_item
from opportunity_matcher.core.exceptions import (
    EmbeddingUnavailable,
    EmbeddingValidationError,
    NotFound,
    ProviderTransientError,
    StoreUnavailable,
)
from opportunity_matcher.models.recommendation import RecommendationConfig
from opportunity_matcher.services.recommendation_service import (
    REASON_EMBEDDING_UNAVAILABLE,
    REASON_EMPTY_PROFILE,
    REASON_NO_MATCHES,
    REASON_NO_PROFILE,
)


@pytest.fixture
async def synced(sync_service, provider):
    await sync_service.sync()
    provider.calls.clear()
    return sync_service


@pytest.mark.asyncio
async def test_recommend_ranks_matching_items_above_threshold(synced, recommendation_service):
    result = await recommendation_service.recommend("user-math", k=5)

    assert not result.degraded
    assert set(result.item_ids) == {"math-1", "sci-1"}
    assert all(item.similarity == pytest.approx(0.633, abs=1e-3) for item in result.items)


@pytest.mark.asyncio
async def test_cold_start_preference_is_embedded_once(synced, recommendation_service, vector_store, provider):
    await recommendation_service.recommend("user-math")
    await recommendation_service.recommend("user-math")

    assert len(provider.calls) == 1
    preference = await vector_store.get_user_preference("user-math")
    assert preference.source_text == "undergraduate math science"


@pytest.mark.asyncio
async def test_unknown_user_gets_recent_items(synced, recommendation_service):
    result = await recommendation_service.recommend("stranger", k=2)

    assert result.degraded
    assert result.reason == REASON_NO_PROFILE
    assert result.item_ids == ["art-1", "sci-1"]
    assert all(item.similarity == 0.5 for item in result.items)
    assert "content_hash" not in result.items[0].metadata
    assert result.items[0].metadata["title"] == "Art Grant"


@pytest.mark.asyncio
async def test_empty_profile_gets_recent_items(synced, recommendation_service, provider):
    result = await recommendation_service.recommend("user-empty")

    assert result.degraded
    assert result.reason == REASON_EMPTY_PROFILE
    assert provider.calls == []


@pytest.mark.asyncio
async def test_no_matches_above_threshold_falls_back(recommendation_service):
    result = await recommendation_service.recommend("user-math", k=3)

    assert result.degraded
    assert result.reason == REASON_NO_MATCHES
    assert len(result) == 3


@pytest.mark.asyncio
async def test_published_config_changes_threshold(synced, recommendation_service, config_holder):
    config_holder.publish(RecommendationConfig(similarity_threshold=0.7, helpful_ratio=0.9))

    result = await recommendation_service.recommend("user-math")

    assert result.degraded
    assert result.reason == REASON_NO_MATCHES


@pytest.mark.asyncio
async def test_embedding_outage_serves_fallback(synced, recommendation_service, provider):
    provider.fail_with(ProviderTransientError("down"), ProviderTransientError("down"))

    result = await recommendation_service.recommend("user-math")

    assert result.degraded
    assert result.reason == REASON_EMBEDDING_UNAVAILABLE


@pytest.mark.asyncio
async def test_embedding_outage_with_catalog_down_raises(synced, recommendation_service, provider, catalog_store):
    provider.fail_with(ProviderTransientError("down"), ProviderTransientError("down"))
    catalog_store.unavailable = True

    with pytest.raises(EmbeddingUnavailable):
        await recommendation_service.recommend("user-math")


@pytest.mark.asyncio
async def test_fallback_with_catalog_down_raises_store_unavailable(synced, recommendation_service, catalog_store):
    catalog_store.unavailable = True

    with pytest.raises(StoreUnavailable):
        await recommendation_service.recommend("stranger")


@pytest.mark.asyncio
async def test_find_similar_excludes_the_item_itself(catalog_store, sync_service, recommendation_service):
    catalog_store.add(make_item("math-2", "Math Scholarship for Girls", category="math"))
    await sync_service.sync()

    result = await recommendation_service.find_similar("math-1", k=5)

    assert result.item_ids == ["math-2"]
    assert result.items[0].similarity == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_find_similar_embeds_catalog_item_missing_from_index(recommendation_service, provider):
    result = await recommendation_service.find_similar("art-1")

    assert result.items == []
    assert provider.calls == [["Art Grant art"]]


@pytest.mark.asyncio
async def test_find_similar_unknown_item_raises_not_found(recommendation_service):
    with pytest.raises(NotFound):
        await recommendation_service.find_similar("nope")


@pytest.mark.asyncio
async def test_search_returns_items_above_threshold(synced, recommendation_service):
    result = await recommendation_service.search("art grant")

    assert result.item_ids == ["art-1"]
    assert result.items[0].similarity == pytest.approx(0.949, abs=1e-3)


@pytest.mark.asyncio
async def test_search_honours_explicit_threshold(synced, recommendation_service):
    result = await recommendation_service.search("art grant", threshold=0.99)

    assert result.items == []


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   "])
async def test_search_rejects_empty_text(recommendation_service, text):
    with pytest.raises(EmbeddingValidationError):
        await recommendation_service.search(text)


@pytest.mark.asyncio
async def test_update_user_preferences_overwrites_vector(recommendation_service, vector_store):
    first = await recommendation_service.update_user_preferences("user-math")
    second = await recommendation_service.update_user_preferences("user-math", {"art": 2.0})

    stored = await vector_store.get_user_preference("user-math")
    assert stored.source_text == second.source_text
    assert second.source_text == f"{first.source_text} art (2 interactions)"


@pytest.mark.asyncio
async def test_update_user_preferences_for_unknown_user(recommendation_service):
    with pytest.raises(NotFound):
        await recommendation_service.update_user_preferences("stranger")

    preference = await recommendation_service.update_user_preferences("stranger", {"music": 3.0})
    assert preference.source_text == "music (3 interactions)"


@pytest.mark.asyncio
async def test_update_user_preferences_with_empty_profile(recommendation_service):
    with pytest.raises(EmbeddingValidationError):
        await recommendation_service.update_user_preferences("user-empty")
