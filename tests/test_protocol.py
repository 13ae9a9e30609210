import math
import random
import struct
import zlib

import pytest

from marker_fusion.errors import MalformedPacket
from marker_fusion.ip_types import (
    InertialSample,
    MarkerObservation,
    MarkerSet,
    PacketKind,
    StatusReport,
    TelemetryPacket,
)
from marker_fusion.protocol import (
    DEFAULT_SYNC,
    GRAVITY,
    Decoder,
    DecoderState,
    encode_packet,
    make_packet,
)


def _markers():
    return MarkerSet(
        (
            MarkerObservation(100.5, 200.25, 1, 4),
            MarkerObservation(300.0, 50.0, None, 2),
        )
    )


def _inertial(t=1000, mag=None):
    return InertialSample(t, (0.1, -0.2, 0.3), (0.0, 0.0, GRAVITY), mag)


def test_decode_each_kind():
    frames = (
        encode_packet(make_packet(1, 10, _markers()))
        + encode_packet(make_packet(2, 20, _inertial(20, mag=(30.0, -15.0, 45.0))))
        + encode_packet(make_packet(3, 30, StatusReport(0x03, True, 2)))
    )
    packets = Decoder().feed(frames)

    assert [p.kind for p in packets] == [PacketKind.MARKERS, PacketKind.INERTIAL, PacketKind.STATUS]
    assert [p.sequence for p in packets] == [1, 2, 3]

    markers = packets[0].payload
    assert len(markers) == 2
    assert markers.observations[0].marker_id == 1
    assert markers.observations[1].marker_id is None
    assert markers.observations[0].x == pytest.approx(100.5)

    sample = packets[1].payload
    assert sample.timestamp_us == 20
    assert sample.accel[2] == pytest.approx(GRAVITY, rel=1e-4)
    assert sample.gyro == pytest.approx((0.1, -0.2, 0.3), abs=2e-3)
    assert sample.mag == pytest.approx((30.0, -15.0, 45.0), abs=0.15)

    status = packets[2].payload
    assert status == StatusReport(0x03, True, 2)


def test_inertial_without_magnetometer():
    (pkt,) = Decoder().feed(encode_packet(make_packet(0, 5, _inertial(5))))
    assert pkt.payload.mag is None


def test_chunked_feed_matches_single_feed():
    data = b"".join(encode_packet(make_packet(i, i * 100, _inertial(i * 100))) for i in range(20))
    dec = Decoder()
    out = []
    for i in range(0, len(data), 7):
        out.extend(dec.feed(data[i:i + 7]))

    assert [p.sequence for p in out] == list(range(20))
    assert dec.stats.malformed == 0
    assert dec.stats.bytes_discarded == 0


def test_leading_garbage_is_skipped():
    frame = encode_packet(make_packet(7, 70, _inertial(70)))
    dec = Decoder()
    packets = dec.feed(b"\x00\x13\xa5garbage" + frame)

    assert [p.sequence for p in packets] == [7]
    assert dec.stats.bytes_discarded == len(b"\x00\x13\xa5garbage")


def test_corrupted_frame_is_dropped_and_next_one_survives():
    good1 = encode_packet(make_packet(1, 10, _inertial(10)))
    bad = bytearray(encode_packet(make_packet(2, 20, _inertial(20))))
    bad[12] ^= 0xFF
    good2 = encode_packet(make_packet(3, 30, _inertial(30)))

    dec = Decoder()
    packets = dec.feed(good1 + bytes(bad) + good2)

    assert [p.sequence for p in packets] == [1, 3]
    assert dec.stats.crc_errors == 1
    assert dec.stats.malformed == 1
    assert dec.stats.sequence_gaps == 1
    assert dec.stats.dropped_packets == 1


def test_unknown_kind_is_rejected_after_crc():
    header = struct.pack("<BBHIQ", 1, 9, 2, 5, 50)
    body = b"\x00\x00"
    crc = struct.pack("<I", zlib.crc32(header + body) & 0xFFFFFFFF)
    dec = Decoder()

    assert dec.feed(DEFAULT_SYNC + header + body + crc) == []
    assert dec.stats.unknown_kind == 1
    assert dec.stats.crc_errors == 0


def test_version_mismatch_is_rejected():
    pkt = TelemetryPacket(2, 1, 10, PacketKind.STATUS, StatusReport(1, True))
    dec = Decoder()

    assert dec.feed(encode_packet(pkt)) == []
    assert dec.stats.version_errors == 1


def test_oversized_length_does_not_wait_for_body():
    header = struct.pack("<BBHIQ", 1, 1, 60000, 0, 0)
    follow = encode_packet(make_packet(4, 40, StatusReport(1, False)))
    dec = Decoder(max_body_len=256)

    packets = dec.feed(DEFAULT_SYNC + header + follow)

    assert [p.sequence for p in packets] == [4]
    assert dec.stats.length_errors == 1


def test_payload_length_mismatch():
    header = struct.pack("<BBHIQ", 1, int(PacketKind.STATUS), 3, 0, 0)
    body = b"\x01\x01\x00"
    crc = struct.pack("<I", zlib.crc32(header + body) & 0xFFFFFFFF)
    dec = Decoder()

    assert dec.feed(DEFAULT_SYNC + header + body + crc) == []
    assert dec.stats.payload_errors == 1


def test_sequence_tracking_counts_duplicates_and_reordering():
    dec = Decoder()
    for seq in (1, 2, 2, 1, 5):
        dec.feed(encode_packet(make_packet(seq, seq * 10, StatusReport(0, True))))

    assert dec.stats.packets == 5
    assert dec.stats.duplicates == 1
    assert dec.stats.out_of_order == 1
    assert dec.stats.sequence_gaps == 1
    assert dec.stats.dropped_packets == 2


def test_partial_frame_waits_for_more_bytes():
    frame = encode_packet(make_packet(1, 10, _markers()))
    dec = Decoder()

    assert dec.feed(frame[:-3]) == []
    assert dec.state is DecoderState.READING_BODY
    assert [p.sequence for p in dec.feed(frame[-3:])] == [1]
    assert dec.state is DecoderState.SEEKING_SYNC


def test_resync_drops_buffered_bytes():
    frame = encode_packet(make_packet(1, 10, _markers()))
    dec = Decoder()
    dec.feed(frame[:10])
    dec.resync()

    assert dec.state is DecoderState.SEEKING_SYNC
    assert len(dec.feed(frame)) == 1
    assert dec.stats.bytes_discarded == 10


def test_feed_frames_returns_exact_bytes():
    frame = encode_packet(make_packet(1, 10, _markers()))
    ((pkt, raw),) = Decoder().feed_frames(b"\xff" + frame)
    assert raw == frame
    assert pkt.sequence == 1


def test_custom_sync_marker():
    sync = b"\xde\xad\xbe"
    frame = encode_packet(make_packet(1, 10, StatusReport(1, True)), sync=sync)
    assert len(Decoder(sync=sync).feed(frame)) == 1
    assert Decoder().feed(frame) == []


def test_non_finite_marker_coordinate_rejected():
    body = bytes([1]) + struct.pack("<ffBB", math.nan, 1.0, 1, 0)
    header = struct.pack("<BBHIQ", 1, int(PacketKind.MARKERS), len(body), 0, 0)
    crc = struct.pack("<I", zlib.crc32(header + body) & 0xFFFFFFFF)
    dec = Decoder()

    assert dec.feed(DEFAULT_SYNC + header + body + crc) == []
    assert dec.stats.payload_errors == 1


def test_make_packet_rejects_unknown_payload():
    with pytest.raises(TypeError):
        make_packet(0, 0, object())


def test_malformed_packet_reason():
    err = MalformedPacket("crc", "bad")
    assert err.reason == "crc"
    assert "bad" in str(err)


def _frame(kind, body, seq=0, ts=0):
    header = struct.pack("<BBHIQ", 1, int(kind), len(body), seq, ts)
    crc = struct.pack("<I", zlib.crc32(header + body) & 0xFFFFFFFF)
    return DEFAULT_SYNC + header + body + crc


@pytest.mark.parametrize(
    "kind, body",
    [
        (PacketKind.MARKERS, bytes([2]) + struct.pack("<ffBB", 12.5, -3.25, 7, 3) + struct.pack("<ffBB", 0.0, 640.0, 0xFF, 1)),
        (PacketKind.MARKERS, bytes([0])),
        (PacketKind.STATUS, struct.pack("<BBH", 0x05, 1, 65535)),
        (PacketKind.INERTIAL, bytes([0]) + struct.pack("<hhh", 0, 0, 16384) + struct.pack("<hhh", 94, -188, 282)),
        (
            PacketKind.INERTIAL,
            bytes([1])
            + struct.pack("<hhh", -32768, 0, 32767)
            + struct.pack("<hhh", 1, -1, 0)
            + struct.pack("<hhh", -32768, 12345, 32767),
        ),
    ],
)
def test_decoded_packet_encodes_back_to_same_frame(kind, body):
    frame = _frame(kind, body, seq=0xFFFFFFFF, ts=123456789)
    (pkt,) = Decoder().feed(frame)

    assert pkt.kind is kind
    assert encode_packet(pkt) == frame


def test_random_corruption_resyncs_within_bound():
    rng = random.Random(1234)
    dec = Decoder(max_body_len=64)
    frames = [encode_packet(make_packet(i, i * 1000, _inertial(i * 1000))) for i in range(30)]
    corrupted = {3, 8, 13, 18, 23}
    data = bytearray()
    starts, ends = [], []
    for i, frame in enumerate(frames):
        frame = bytearray(frame)
        if i in corrupted:
            frame[rng.randrange(len(frame))] ^= rng.randrange(1, 256)
        starts.append(len(data))
        data += frame
        ends.append(len(data))

    emitted_at = {}
    for pos in range(len(data)):
        for pkt in dec.feed(data[pos:pos + 1]):
            emitted_at[pkt.sequence] = pos + 1

    assert sorted(emitted_at) == [i for i in range(30) if i not in corrupted]
    assert dec.stats.malformed >= 1
    for i in corrupted:
        bound = max(ends[i + 1], starts[i] + dec.max_body_len + dec.frame_overhead)
        assert emitted_at[i + 1] <= bound


def _feed_sequence(dec, seqs):
    for seq in seqs:
        dec.feed(encode_packet(make_packet(seq, 0, StatusReport(0, True))))


def test_restart_after_resync_keeps_later_gaps_visible():
    dec = Decoder()
    _feed_sequence(dec, range(1000, 1005))
    dec.resync()
    _feed_sequence(dec, (0, 1, 2, 5, 6))

    assert dec.stats.sequence_restarts == 1
    assert dec.stats.out_of_order == 0
    assert dec.stats.sequence_gaps == 1
    assert dec.stats.dropped_packets == 2


def test_large_backward_jump_is_a_restart():
    dec = Decoder(restart_window=16)
    _feed_sequence(dec, (500, 501, 3, 4, 7))

    assert dec.stats.sequence_restarts == 1
    assert dec.stats.out_of_order == 0
    assert dec.stats.dropped_packets == 2


def test_sequence_wraps_around_u32():
    dec = Decoder()
    _feed_sequence(dec, (0xFFFFFFFE, 0xFFFFFFFF, 0, 1))
    assert dec.stats.sequence_gaps == 0
    assert dec.stats.out_of_order == 0
    assert dec.stats.sequence_restarts == 0

    _feed_sequence(dec, (3,))
    assert dec.stats.sequence_gaps == 1
    assert dec.stats.dropped_packets == 1


def test_small_backward_step_without_resync_is_reordering():
    dec = Decoder()
    _feed_sequence(dec, (10, 11, 12, 9, 13))

    assert dec.stats.out_of_order == 1
    assert dec.stats.sequence_restarts == 0
    assert dec.stats.sequence_gaps == 0
