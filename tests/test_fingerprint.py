import threading

import pytest

from tokenvault.service.fingerprint import FingerprintGenerator, generate


def test_token_cannot_repeat_across_threads():
    tokens = [None] * 10
    barrier = threading.Barrier(len(tokens))

    def worker(i):
        barrier.wait()
        tokens[i] = generate("user-token", "md5")

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(len(tokens))]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert all(tokens)
    assert len(set(tokens)) == len(tokens)


def test_same_clock_and_entropy_give_same_fingerprint():
    kwargs = {"clock": lambda: 1700000000000000000, "entropy": lambda n: b"\x01" * n}

    assert generate("seed", **kwargs) == generate("seed", **kwargs)
    assert generate("seed", **kwargs) != generate("other-seed", **kwargs)


def test_entropy_alone_separates_calls_at_identical_timestamps():
    counter = iter(range(100))
    gen = FingerprintGenerator(
        clock=lambda: 42, entropy=lambda n: next(counter).to_bytes(n, "big")
    )

    assert gen("seed") != gen("seed")


@pytest.mark.parametrize(
    "algorithm,length", [("md5", 32), ("sha1", 40), ("sha256", 64), ("sha512", 128)]
)
def test_output_is_hex_digest_of_selected_algorithm(algorithm, length):
    value = generate("pure@alanis.com", algorithm)

    assert len(value) == length
    int(value, 16)


def test_unknown_algorithm_rejected():
    with pytest.raises(ValueError):
        generate("seed", "not-a-digest")
    with pytest.raises(ValueError):
        FingerprintGenerator("not-a-digest")


@pytest.mark.parametrize("algorithm", ["shake_128", "shake_256"])
def test_variable_length_algorithms_rejected(algorithm):
    with pytest.raises(ValueError):
        generate("seed", algorithm)
    with pytest.raises(ValueError):
        FingerprintGenerator(algorithm)
