from quotecall.validation import (
    detect_agreement,
    detect_callback_request,
    detect_firm_price,
    detect_hold,
    detect_human_request,
    detect_rejection,
    detect_repeat_request,
    detect_transfer_offer,
    detect_voicemail,
    detect_wrong_department,
    format_part_number_for_speech,
    match_any_keyword,
    mentions_price,
    spell_part_number,
)


class TestMatchAnyKeyword:
    def test_whole_word_only(self):
        assert match_any_keyword("no problem", {"no"})
        assert not match_any_keyword("I know", {"no"})

    def test_empty_text(self):
        assert not match_any_keyword("", {"yes"})
        assert not match_any_keyword(None, {"yes"})


class TestDetectors:
    def test_voicemail_greeting(self):
        assert detect_voicemail("You've reached Midwest Hydraulics, please leave a message after the tone")
        assert not detect_voicemail("Parts counter, this is Dave")

    def test_hold(self):
        assert detect_hold("Hang on, let me check")
        assert detect_hold("One moment please")

    def test_hold_with_a_price_is_an_answer(self):
        assert not detect_hold("Let me see, that's $45 each")
        assert not detect_hold("Hold on, it's forty five dollars")

    def test_long_utterance_is_not_hold(self):
        assert not detect_hold(
            "let me check on that for you but I think we have plenty of those filters sitting on the shelf"
        )

    def test_transfer_offer(self):
        assert detect_transfer_offer("Let me transfer you to parts")
        assert detect_hold("Let me transfer you")

    def test_wrong_department(self):
        assert detect_wrong_department("Oh, you want parts, this is service")
        assert not detect_wrong_department("Yeah, this is parts")

    def test_human_request(self):
        assert detect_human_request("Can I talk to a real person?")
        assert not detect_human_request("Sure, what part?")

    def test_repeat_request(self):
        assert detect_repeat_request("Sorry, can you repeat that?")
        assert detect_repeat_request("I didn't catch the part number")
        assert not detect_repeat_request("Got it")

    def test_agreement(self):
        assert detect_agreement("Yep, that's right")
        assert detect_agreement("Sounds good")

    def test_agreement_with_correction_is_not_agreement(self):
        assert not detect_agreement("Yeah, actually the filter is fifty")
        assert not detect_agreement("No, that's wrong")
        assert detect_rejection("No, that's wrong")

    def test_firm_price(self):
        assert detect_firm_price("That's the best I can do")
        assert detect_firm_price("Sorry, the price is firm")
        assert not detect_firm_price("Let me see what I can do")

    def test_callback(self):
        assert detect_callback_request("Can you call back after lunch?")
        assert not detect_callback_request("We have it")

    def test_mentions_price(self):
        assert mentions_price("It's $45")
        assert mentions_price("forty five dollars each")
        assert not mentions_price("No, that's the wrong part")


class TestPartNumberSpeech:
    def test_format_separates_characters(self):
        assert format_part_number_for_speech("ABC-123") == "A B C, 1 2 3"
        assert format_part_number_for_speech("ABC123") == "A B C 1 2 3"

    def test_format_empty(self):
        assert format_part_number_for_speech("") == ""

    def test_spell_uses_nato_alphabet(self):
        assert spell_part_number("XJ-900") == "X as in X-ray, J as in Juliet, dash, nine, zero, zero"

    def test_spell_lowercase(self):
        assert spell_part_number("ab1") == "A as in Alpha, B as in Bravo, one"
