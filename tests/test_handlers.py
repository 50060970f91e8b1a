from unittest.mock import AsyncMock

import pytest

from conftest import VALID_ADDRESS, button_event, make_image, text_event
from core.handlers import (
    CALLBACK_DATA_LIMIT,
    EXPIRED_PROMPT_TEXT,
    INVALID_ADDRESS_TEXT,
    NO_IMAGES_TEXT,
    UNAVAILABLE_TEXT,
    is_valid_address,
    render_image_list,
)
from core.session import AwaitingCollectionAddress, AwaitingImagePrompt
from core.storage import ImageRecord


@pytest.mark.parametrize(
    "candidate,expected",
    [
        (VALID_ADDRESS, True),
        ("  " + VALID_ADDRESS + "\n", True),
        ("1" * 32, True),
        ("1" * 31, False),
        ("1" * 45, False),
        ("0" + "1" * 40, False),
        ("O" + "1" * 40, False),
        ("I" + "1" * 40, False),
        ("l" + "1" * 40, False),
        ("_" + "1" * 40, False),
        ("not an address", False),
    ],
)
def test_address_validation_uses_base58_alphabet(candidate, expected):
    assert is_valid_address(candidate) is expected


def test_image_list_truncates_to_five_newest():
    images = [make_image(i) for i in range(1, 8)]
    text = render_image_list(images)

    entries = [line for line in text.splitlines() if line[:2] in {f"{n}." for n in range(1, 10)}]
    assert len(entries) == 5
    assert entries[0] == '1. "prompt 7"'
    assert entries[-1] == '5. "prompt 3"'
    assert text.endswith("...and 2 more images.")


def test_image_list_exactly_five_has_no_trailer():
    text = render_image_list([make_image(i) for i in range(1, 6)])
    assert "more images" not in text


def test_empty_image_list():
    assert render_image_list([]) == NO_IMAGES_TEXT


@pytest.mark.asyncio
async def test_view_images_renders_store_result(handlers, delivery, collaborators):
    collaborators.store.list_images.return_value = [make_image(i) for i in range(1, 8)]

    await handlers.view_images(button_event("view_images"))

    assert len(delivery.messages) == 1
    assert "...and 2 more images." in delivery.messages[0].text
    assert delivery.messages[0].buttons[0][0].payload == "back_to_menu"


@pytest.mark.asyncio
async def test_view_images_with_no_images(handlers, delivery):
    await handlers.view_images(text_event("/myimages"))

    assert delivery.texts == [NO_IMAGES_TEXT]


@pytest.mark.asyncio
async def test_view_images_storage_failure_is_one_error(handlers, delivery, collaborators):
    collaborators.store.list_images.side_effect = RuntimeError("db down")

    await handlers.view_images(text_event("/myimages"))

    assert len(delivery.messages) == 1
    assert delivery.texts[0].startswith("Sorry")


@pytest.mark.asyncio
async def test_mint_specific_sets_pending_action(handlers, delivery, sessions):
    await handlers.mint_specific(button_event("mint_specific:img-3"), "img-3")

    assert sessions.pending("100") == AwaitingCollectionAddress(image_id="img-3")
    assert delivery.messages[-1].buttons[0][0].payload == "cancel_mint_specific"


@pytest.mark.asyncio
async def test_mint_specific_without_capability(handlers, delivery, sessions, collaborators):
    collaborators.agent.supports.return_value = False

    await handlers.mint_specific(button_event("mint_specific:img-3"), "img-3")

    assert sessions.pending("100") is None
    assert delivery.texts == [UNAVAILABLE_TEXT]


@pytest.mark.asyncio
async def test_invalid_address_keeps_pending_and_reprompts(handlers, delivery, sessions, collaborators):
    pending = AwaitingCollectionAddress(image_id="img-3")
    sessions.set_pending("100", pending)

    await handlers.consume_collection_address(text_event("not-a-valid-address"), pending)

    assert sessions.pending("100") == pending
    assert delivery.texts == [INVALID_ADDRESS_TEXT]
    collaborators.agent.respond.assert_not_awaited()
    collaborators.store.get_image.assert_not_awaited()


@pytest.mark.asyncio
async def test_valid_address_mints_and_resets(handlers, delivery, sessions, collaborators):
    image = make_image(3)
    collaborators.store.get_image.return_value = image
    pending = AwaitingCollectionAddress(image_id="img-3")
    sessions.set_pending("100", pending)

    await handlers.consume_collection_address(text_event(VALID_ADDRESS), pending)

    collaborators.agent.respond.assert_awaited_once()
    user_id, instruction = collaborators.agent.respond.await_args.args
    assert user_id == "42"
    assert image.prompt in instruction
    assert image.url in instruction
    assert VALID_ADDRESS in instruction
    assert sessions.pending("100") is None
    assert delivery.visible_texts() == ["Minted! tx 5xyz"]


@pytest.mark.asyncio
async def test_mint_for_missing_image_clears_state(handlers, delivery, sessions, collaborators):
    pending = AwaitingCollectionAddress(image_id="gone")
    sessions.set_pending("100", pending)

    await handlers.consume_collection_address(text_event(VALID_ADDRESS), pending)

    assert sessions.pending("100") is None
    assert delivery.texts == ["Image not found."]
    collaborators.agent.respond.assert_not_awaited()


@pytest.mark.asyncio
async def test_mint_agent_failure_cleans_up_status(handlers, delivery, sessions, collaborators):
    collaborators.store.get_image.return_value = make_image(3)
    collaborators.agent.respond.side_effect = RuntimeError("openai exploded")
    pending = AwaitingCollectionAddress(image_id="img-3")
    sessions.set_pending("100", pending)

    await handlers.consume_collection_address(text_event(VALID_ADDRESS), pending)

    status = delivery.messages[0]
    assert status.handle in delivery.deleted
    visible = delivery.visible_texts()
    assert len(visible) == 1
    assert visible[0].startswith("Sorry")
    assert sessions.pending("100") is None


@pytest.mark.asyncio
async def test_cancel_resets_without_collaborator_calls(handlers, delivery, sessions, collaborators):
    sessions.set_pending("100", AwaitingCollectionAddress(image_id="img-3"))

    await handlers.cancel_mint_specific(button_event("cancel_mint_specific"))

    assert sessions.pending("100") is None
    assert delivery.texts == ["Mint to specific collection cancelled."]
    collaborators.agent.respond.assert_not_awaited()
    collaborators.store.get_image.assert_not_awaited()
    collaborators.store.list_images.assert_not_awaited()


@pytest.mark.asyncio
async def test_gen_command_without_prompt(handlers, delivery):
    await handlers.gen_command(text_event("/gen"), "")

    assert delivery.texts == ["Please provide a prompt for your image. Example: A beautiful sunset"]


@pytest.mark.asyncio
async def test_gen_command_offers_both_types_with_encoded_prompt(handlers, delivery):
    await handlers.gen_command(text_event("/gen a cat & dog"), "a cat & dog")

    row = delivery.messages[0].buttons[0]
    assert [button.payload for button in row] == [
        "genstandard:a%20cat%20%26%20dog",
        "gentransparent:a%20cat%20%26%20dog",
    ]


@pytest.mark.asyncio
async def test_long_prompt_buttons_fit_callback_limit(router, delivery, collaborators):
    prompt = "a cat sitting on a windowsill at sunset"
    collaborators.store.store_image.return_value = make_image(9)

    await router.dispatch(text_event(f"/gen {prompt}"))

    payloads = [button.payload for row in delivery.messages[0].buttons for button in row]
    assert all(len(payload.encode("utf-8")) <= CALLBACK_DATA_LIMIT for payload in payloads)
    assert payloads[1].startswith("gentransparent_ref:")

    await router.dispatch(button_event(payloads[1]))

    collaborators.images.generate.assert_awaited_once_with(prompt, transparent=True)


@pytest.mark.asyncio
async def test_unknown_prompt_token_asks_for_new_prompt(router, delivery, collaborators):
    await router.dispatch(button_event("genstandard_ref:deadbeef"))

    assert delivery.texts == [EXPIRED_PROMPT_TEXT]
    collaborators.images.generate.assert_not_awaited()


@pytest.mark.asyncio
async def test_generated_caption_escapes_markdown_in_prompt(handlers, delivery, collaborators):
    collaborators.store.store_image.return_value = make_image(9)

    await handlers.generate_standard(button_event("genstandard:x"), "cyber_punk *city*")

    caption = delivery.images[0].caption
    assert caption.startswith('Image generated: "cyber\\_punk \\*city\\*"')
    collaborators.store.store_image.assert_awaited_once()
    assert collaborators.store.store_image.await_args.args[3] == "cyber_punk *city*"


@pytest.mark.asyncio
async def test_image_prompt_continuation_clears_state(handlers, delivery, sessions):
    sessions.set_pending("100", AwaitingImagePrompt())

    await handlers.consume_image_prompt(text_event("neon city"), AwaitingImagePrompt())

    assert sessions.pending("100") is None
    assert delivery.texts == ['Please select image type for: "neon city"']


@pytest.mark.asyncio
async def test_generate_sends_image_and_removes_status(handlers, delivery, collaborators):
    record = make_image(9)
    collaborators.store.store_image.return_value = record

    await handlers.generate_transparent(button_event("gentransparent:x"), "a red fox")

    collaborators.images.generate.assert_awaited_once_with("a red fox", transparent=True)
    assert len(delivery.images) == 1
    image = delivery.images[0]
    assert record.url in image.caption
    assert [b.payload for b in image.buttons[0]] == ["create_collection:img-9", "mint_specific:img-9"]
    assert delivery.messages[0].handle in delivery.deleted
    assert delivery.visible_texts() == []


@pytest.mark.asyncio
async def test_generate_hides_actions_the_agent_cannot_do(handlers, delivery, collaborators):
    collaborators.store.store_image.return_value = make_image(9)
    collaborators.agent.supports.return_value = False

    await handlers.generate_standard(button_event("genstandard:x"), "a red fox")

    assert delivery.images[0].buttons is None


@pytest.mark.asyncio
async def test_generate_failure_reports_once_and_cleans_up(handlers, delivery, collaborators):
    collaborators.images.generate.side_effect = RuntimeError("content policy")

    await handlers.generate_standard(button_event("genstandard:x"), "a red fox")

    assert delivery.messages[0].handle in delivery.deleted
    visible = delivery.visible_texts()
    assert visible == ["Sorry, there was an error generating your image. Please try again later."]
    collaborators.store.store_image.assert_not_awaited()


@pytest.mark.asyncio
async def test_status_delete_failure_is_not_propagated(handlers, delivery, collaborators):
    delivery.fail_delete = True
    collaborators.images.generate.side_effect = RuntimeError("boom")

    await handlers.generate_standard(button_event("genstandard:x"), "a red fox")

    assert delivery.texts[-1].startswith("Sorry")


@pytest.mark.asyncio
async def test_wallet_menu_offers_revoke_when_delegated(handlers, delivery, collaborators):
    collaborators.wallets.is_delegated.return_value = True

    await handlers.open_wallet(button_event("open_wallet"))

    payloads = [row[0].payload for row in delivery.messages[0].buttons]
    assert "wallet:revoke" in payloads
    assert "wallet:delegate" not in payloads


@pytest.mark.asyncio
async def test_wallet_view_without_wallet_offers_creation(handlers, delivery):
    await handlers.wallet_view(button_event("wallet:view"))

    assert delivery.messages[0].text == "You don't have a wallet yet. Create one first!"
    assert delivery.messages[0].buttons[0][0].payload == "wallet:create"


@pytest.mark.asyncio
async def test_wallet_export_shows_key(handlers, delivery, collaborators):
    collaborators.wallets.export_private_key.return_value = "5Kb8kLf9zgWQnogidDA76Mz"

    await handlers.wallet_export(button_event("wallet:export"))

    assert "Private Key: 5Kb8kLf9zgWQnogidDA76Mz" in delivery.texts[0]


@pytest.mark.asyncio
async def test_delegation_failure_reports_error(handlers, delivery, collaborators):
    collaborators.wallets.set_delegation.return_value = False

    await handlers.wallet_delegate(button_event("wallet:delegate"))

    assert delivery.texts == [
        "Sorry, there was an error enabling the server session. Please try again later."
    ]


@pytest.mark.asyncio
async def test_create_collection_remembers_metadata(handlers, delivery, sessions, collaborators):
    collaborators.store.get_image.return_value = make_image(4)
    collaborators.agent.respond.return_value = "Collection created: 9xQe"

    await handlers.create_collection(button_event("create_collection:img-4"), "img-4")

    assert sessions.last_metadata_uri("100") == "https://gateway.pinata.cloud/ipfs/QmMeta"
    metadata = collaborators.pinata.pin_json.await_args.args[0]
    assert metadata["image"] == "https://gateway.pinata.cloud/ipfs/QmImage"
    instruction = collaborators.agent.respond.await_args.args[1]
    assert "https://gateway.pinata.cloud/ipfs/QmMeta" in instruction
    assert delivery.visible_texts() == ["Collection created: 9xQe"]


@pytest.mark.asyncio
async def test_previous_metadata_shortcut_without_uri(handlers, delivery, collaborators):
    await handlers.use_previous_metadata(text_event("create it using the metadata/uri from previous message"))

    assert delivery.texts[0].startswith("No metadata URI found")
    collaborators.agent.respond.assert_not_awaited()


@pytest.mark.asyncio
async def test_fallback_goes_to_agent(handlers, delivery, collaborators):
    collaborators.agent.respond = AsyncMock(return_value="SOL is at 150")

    await handlers.fallback(text_event("what's the price of sol?"), "what's the price of sol?")

    collaborators.agent.respond.assert_awaited_once_with("42", "what's the price of sol?")
    assert delivery.texts == ["SOL is at 150"]
    assert delivery.typing >= 1


@pytest.mark.asyncio
async def test_fallback_agent_failure_is_one_error(handlers, delivery, collaborators):
    collaborators.agent.respond.side_effect = RuntimeError("rate limited")

    await handlers.fallback(text_event("hi"), "hi")

    assert delivery.texts == ["Sorry, there was an error processing your message. Please try again later."]


def test_image_record_sorting_handles_unsorted_service_output():
    images = [make_image(2), make_image(5), make_image(1)]
    first_line = render_image_list(images).splitlines()[2]
    assert first_line == '1. "prompt 5"'
    assert isinstance(images[0], ImageRecord)
