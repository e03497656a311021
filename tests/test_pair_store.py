import numpy as np
import pytest
from PIL import Image

from pet_identification.errors import BadRequestError, TensorLifecycleError
from pet_identification.events import StatusKind
from pet_identification.pair_store import DataBalance, PairRecord, add_training_pair


@pytest.mark.parametrize("positive, negative, imbalanced", [
    (10, 5, True),
    (5, 10, True),
    (10, 9, False),
    (6, 5, False),
    (0, 0, False),
    (1, 0, True),
])
def test_imbalance_rule(positive, negative, imbalanced):
    balance = DataBalance(positive=positive, negative=negative, total=positive + negative)
    assert balance.is_imbalanced() is imbalanced


def test_pairs_and_records_stay_aligned(context, add_pairs):
    balance = add_pairs(2, 1)

    assert balance.to_dict() == {'positive': 2, 'negative': 1, 'total': 3}
    assert len(context.pairs.pairs) == len(context.pairs.records) == 3
    for pair, record in zip(context.pairs, context.pairs.records):
        assert bool(pair.label) == record.is_same_animal
        assert record.image1_url.startswith('data:image/png;base64,')
        assert tuple(pair.image1.shape) == (1, 16, 16, 3)


def test_add_emits_adding_event(context, add_pairs):
    add_pairs(1, 0)
    event = context.emitter.history[-1]

    assert event.kind == StatusKind.ADDING
    assert event.details['total'] == 1


def test_wrong_image_count_is_rejected(context, make_image):
    result = add_training_pair(context, [make_image(1)], True)

    assert not result.success
    assert result.status == 400
    assert len(context.pairs) == 0


@pytest.mark.parametrize("images", [None, 42, "ab", b"ab"])
def test_non_sequence_images_are_rejected(context, images):
    result = add_training_pair(context, images, True)

    assert not result.success
    assert result.status == 400
    assert "Two images are required" in result.message
    assert context.registry.live_count == 0


def test_failed_second_image_releases_first(context, make_image):
    result = add_training_pair(context, [make_image(1), b"broken"], True, urls=["a.png", "b.png"])

    assert not result.success
    assert result.status == 500
    assert len(context.pairs) == 0
    assert context.registry.live_count == 0


def test_urls_from_pil_filename(context, tmp_path):
    paths = []
    for index in range(2):
        path = tmp_path / f"pet{index}.png"
        Image.new('RGB', (8, 8), (index * 100, 0, 0)).save(path)
        paths.append(path)

    images = [Image.open(path) for path in paths]
    assert add_training_pair(context, images, False).success
    assert context.pairs.records[0].image1_url == str(paths[0])
    assert context.pairs.records[0].is_same_animal is False


def test_in_memory_handles_are_recorded_as_data_urls(context, make_image):
    pil_image = make_image(1).image
    array = np.asarray(make_image(2).image)

    assert add_training_pair(context, [pil_image, array], True).success
    assert add_training_pair(context, [make_image(3), pil_image], False, urls=["pet3.png", ""]).success

    first, second = context.pairs.records
    assert first.image1_url.startswith("data:image/png;base64,")
    assert first.image2_url.startswith("data:image/png;base64,")
    assert second.image1_url == "pet3.png"
    assert second.image2_url == first.image1_url


def test_clear_releases_every_tensor(context, add_pairs):
    add_pairs(2, 2)
    pair = context.pairs.pairs[0]
    assert context.registry.live_count == 8

    context.pairs.clear()

    assert len(context.pairs) == 0
    assert context.pairs.records == []
    assert context.registry.live_count == 0
    with pytest.raises(TensorLifecycleError):
        context.registry.release(pair.image1)


def test_clear_reports_tensor_released_elsewhere(context, add_pairs):
    add_pairs(1, 1)
    context.registry.release(context.pairs.pairs[0].image1)

    with pytest.raises(TensorLifecycleError):
        context.pairs.clear()

    assert len(context.pairs) == 0
    assert context.pairs.records == []
    assert context.registry.live_count == 0


def test_describe(context, add_pairs):
    add_pairs(1, 1)
    summary = context.pairs.describe("export", "pet-identification", 16)

    assert summary['metadata']['totalPairs'] == 2
    assert summary['balance'] == {'positive': 1, 'negative': 1, 'total': 2}
    assert [p['labelText'] for p in summary['pairsMetadata']] == ['same animal', 'different animals']


def test_pair_record_round_trip_and_validation():
    record = PairRecord("a.png", "b.png", True)
    assert PairRecord.from_dict(record.to_dict()) == record

    with pytest.raises(BadRequestError):
        PairRecord.from_dict({'image1Url': 'a.png', 'image2Url': 'b.png'})
    with pytest.raises(BadRequestError):
        PairRecord.from_dict({'image1Url': 'a.png', 'image2Url': 'b.png', 'isSameAnimal': 'yes'})
