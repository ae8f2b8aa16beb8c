"""Tests for per-clinic attribution config resolution."""
import pytest

from affiliate_attribution.services.attribution_config import (
    DEFAULT_ATTRIBUTION_CONFIG,
    resolve_attribution_config,
)


class TestResolveAttributionConfig:
    @pytest.mark.asyncio
    async def test_defaults_without_row(self, session, seed):
        clinic_id = await seed.clinic()
        config = await resolve_attribution_config(session, clinic_id)
        assert config is DEFAULT_ATTRIBUTION_CONFIG
        assert config.new_patient_model == "FIRST_CLICK"
        assert config.returning_patient_model == "LAST_CLICK"
        assert config.cookie_window_days == 30
        assert config.impression_window_hours == 24
        assert config.enable_fingerprinting is True
        assert config.is_default

    @pytest.mark.asyncio
    async def test_clinic_row_wins(self, session, seed):
        clinic_id = await seed.clinic()
        await seed.attribution_config(
            clinic_id,
            new_patient_model="LINEAR",
            returning_patient_model="TIME_DECAY",
            cookie_window_days=7,
        )
        config = await resolve_attribution_config(session, clinic_id)
        assert config.new_patient_model == "LINEAR"
        assert config.returning_patient_model == "TIME_DECAY"
        assert config.cookie_window_days == 7
        assert not config.is_default

    @pytest.mark.asyncio
    async def test_config_is_scoped_to_clinic(self, session, seed):
        configured = await seed.clinic("Configured")
        other = await seed.clinic("Other")
        await seed.attribution_config(configured, new_patient_model="POSITION")
        config = await resolve_attribution_config(session, other)
        assert config.new_patient_model == "FIRST_CLICK"

    @pytest.mark.asyncio
    async def test_unknown_model_is_preserved(self, session, seed):
        clinic_id = await seed.clinic()
        await seed.attribution_config(clinic_id, new_patient_model="CUSTOM")
        config = await resolve_attribution_config(session, clinic_id)
        assert config.model_for(is_new_patient=True) == "CUSTOM"

    def test_model_for_selects_by_patient_type(self):
        assert DEFAULT_ATTRIBUTION_CONFIG.model_for(True) == "FIRST_CLICK"
        assert DEFAULT_ATTRIBUTION_CONFIG.model_for(False) == "LAST_CLICK"
