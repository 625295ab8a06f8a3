"""
Tokenizer module unit tests
"""

import pytest

from tokenizer import count_tokens, exceeds_budget, get_encoder


class TestCountTokens:
    """Test count_tokens function"""

    def test_empty_string(self):
        """Empty string should return 0"""
        assert count_tokens("") == 0

    def test_simple_english(self):
        """Simple English text"""
        result = count_tokens("Hello, world!")
        assert result > 0
        assert isinstance(result, int)

    def test_chinese_text(self):
        """Chinese text"""
        assert count_tokens("灯塔守护者收到来自未来的信") > 0

    def test_special_token_text_is_counted(self):
        """Special-token markers in model output are counted as plain text"""
        assert count_tokens("<|endoftext|>") > 1

    def test_invalid_input(self):
        """Non-string input should raise exception"""
        with pytest.raises(ValueError):
            count_tokens(123)

        with pytest.raises(ValueError):
            count_tokens(None)


class TestGetEncoder:
    """Test get_encoder function"""

    def test_singleton(self):
        """Should return same encoder instance"""
        assert get_encoder() is get_encoder()

    def test_encoder_works(self):
        """Encoder should work properly"""
        assert len(get_encoder().encode("test")) > 0


class TestExceedsBudget:
    """Test exceeds_budget function"""

    def test_within_budget(self):
        assert exceeds_budget("Hello", 100) is False

    def test_over_ratio(self):
        text = "word " * 100
        assert exceeds_budget(text, 100) is True
        assert exceeds_budget(text, 100, ratio=10) is False
