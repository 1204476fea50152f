"""Playlist rewriting: URI lines, URI-valued tag attributes, passthrough."""

import re

from shinra.proxy.models import RewriteJob
from shinra.proxy.resolver import decode_target, encode_target
from shinra.proxy.rewriter import looks_like_playlist, rewrite_job, rewrite_playlist

BASE = "https://example.com/live/stream/index.m3u8?token=abc"
PROXY = "https://proxy.test/proxy"

_PROXIED = re.compile(re.escape(PROXY) + r"/base64/([A-Za-z0-9_-]+)")


def _proxied(url: str) -> str:
    return f"{PROXY}/base64/{encode_target(url)}"


def _decoded_references(text: str) -> list[str]:
    return [decode_target(m) for m in _PROXIED.findall(text)]


MEDIA_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:7
#EXT-X-TARGETDURATION:6
#EXT-X-MEDIA-SEQUENCE:100
#EXT-X-KEY:METHOD=AES-128,URI="keys/key1.bin",IV=0x1234
#EXT-X-MAP:URI="init.mp4",BYTERANGE="720@0"
#EXTINF:6.0,
segment1.ts
#EXTINF:6.0,title with, commas
../other/segment2.ts?sig=xyz
#EXTINF:6.0,
/absolute/path/segment3.ts
#EXTINF:6.0,
https://cdn2.example.net/segment4.ts?a=1&b=2
#EXT-X-ENDLIST
"""


def test_relative_segment_is_rewritten_through_proxy():
    playlist = "#EXTM3U\n#EXTINF:10,\nsegment1.ts\n"
    out = rewrite_playlist(playlist, "https://example.com/video.m3u8", PROXY)
    assert out.splitlines()[2] == _proxied("https://example.com/segment1.ts")


def test_every_reference_round_trips_to_original_absolute_url():
    out = rewrite_playlist(MEDIA_PLAYLIST, BASE, PROXY)
    assert _decoded_references(out) == [
        "https://example.com/live/stream/keys/key1.bin",
        "https://example.com/live/stream/init.mp4",
        "https://example.com/live/stream/segment1.ts",
        "https://example.com/live/other/segment2.ts?sig=xyz",
        "https://example.com/absolute/path/segment3.ts",
        "https://cdn2.example.net/segment4.ts?a=1&b=2",
    ]


def test_non_uri_characters_are_preserved():
    out = rewrite_playlist(MEDIA_PLAYLIST, BASE, PROXY)
    lines = out.split("\n")
    original = MEDIA_PLAYLIST.split("\n")
    assert len(lines) == len(original)
    assert lines[4] == f'#EXT-X-KEY:METHOD=AES-128,URI="{_proxied("https://example.com/live/stream/keys/key1.bin")}",IV=0x1234'
    assert lines[5] == f'#EXT-X-MAP:URI="{_proxied("https://example.com/live/stream/init.mp4")}",BYTERANGE="720@0"'
    for i in (0, 1, 2, 3, 6, 8, 14, 15):
        assert lines[i] == original[i]


def test_absolute_urls_are_encoded_verbatim():
    odd = "https://cdn.example.com/a//b/../c.ts?empty=&x"
    out = rewrite_playlist(f"#EXTM3U\n{odd}\n", BASE, PROXY)
    assert _decoded_references(out) == [odd]


def test_master_playlist_tags_are_rewritten():
    master = "\n".join([
        "#EXTM3U",
        '#EXT-X-CONTENT-STEERING:SERVER-URI="steering.json",PATHWAY-ID="CDN-A"',
        '#EXT-X-SESSION-KEY:METHOD=SAMPLE-AES,URI="session.key",KEYFORMAT="identity"',
        '#EXT-X-SESSION-DATA:DATA-ID="com.example.lyrics",URI="lyrics.json"',
        '#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",NAME="English",LANGUAGE="en",URI="audio/en.m3u8"',
        '#EXT-X-MEDIA:TYPE=CLOSED-CAPTIONS,GROUP-ID="cc",NAME="CC1",INSTREAM-ID="CC1"',
        '#EXT-X-I-FRAME-STREAM-INF:BANDWIDTH=86000,CODECS="avc1.4d001f",URI="iframe/low.m3u8"',
        '#EXT-X-IMAGE-STREAM-INF:BANDWIDTH=10000,RESOLUTION=320x180,URI="thumbs/index.m3u8"',
        '#EXT-X-STREAM-INF:BANDWIDTH=1280000,CODECS="avc1.4d001f,mp4a.40.2",AUDIO="aud"',
        "video/720p.m3u8",
        "",
    ])
    out = rewrite_playlist(master, "https://example.com/hls/master.m3u8", PROXY)
    assert _decoded_references(out) == [
        "https://example.com/hls/steering.json",
        "https://example.com/hls/session.key",
        "https://example.com/hls/lyrics.json",
        "https://example.com/hls/audio/en.m3u8",
        "https://example.com/hls/iframe/low.m3u8",
        "https://example.com/hls/thumbs/index.m3u8",
        "https://example.com/hls/video/720p.m3u8",
    ]
    lines = out.split("\n")
    # Attribute values other than the URI stay untouched, commas in quotes included.
    assert 'PATHWAY-ID="CDN-A"' in lines[1]
    assert 'CODECS="avc1.4d001f,mp4a.40.2",AUDIO="aud"' in lines[8]
    assert lines[5] == '#EXT-X-MEDIA:TYPE=CLOSED-CAPTIONS,GROUP-ID="cc",NAME="CC1",INSTREAM-ID="CC1"'


def test_low_latency_and_interstitial_tags_are_rewritten():
    playlist = "\n".join([
        "#EXTM3U",
        '#EXT-X-PART:DURATION=0.33,URI="part1.mp4",INDEPENDENT=YES',
        '#EXT-X-PRELOAD-HINT:TYPE=PART,URI="part2.mp4"',
        '#EXT-X-RENDITION-REPORT:URI="../1M/waitForMSN.m3u8",LAST-MSN=273,LAST-PART=2',
        '#EXT-X-DATERANGE:ID="ad1",CLASS="com.apple.hls.interstitial",START-DATE="2024-01-01T00:00:00Z",'
        'X-ASSET-URI="https://ads.example.org/ad.m3u8",X-ASSET-LIST="assets.json"',
    ])
    out = rewrite_playlist(playlist, "https://example.com/ll/2M/index.m3u8", PROXY)
    assert _decoded_references(out) == [
        "https://example.com/ll/2M/part1.mp4",
        "https://example.com/ll/2M/part2.mp4",
        "https://example.com/ll/1M/waitForMSN.m3u8",
        "https://ads.example.org/ad.m3u8",
        "https://example.com/ll/2M/assets.json",
    ]
    assert "LAST-MSN=273,LAST-PART=2" in out
    assert 'START-DATE="2024-01-01T00:00:00Z"' in out


def test_unlisted_tags_and_comments_are_untouched():
    playlist = "\n".join([
        "#EXTM3U",
        "# a comment mentioning segment.ts",
        '#EXT-X-PROGRAM-DATE-TIME:2024-01-01T00:00:00.000Z',
        '#EXT-X-SOMETHING-NEW:URI="not-ours.bin"',
        '#EXTINF:4.0,URI="in-title"',
    ])
    assert rewrite_playlist(playlist, BASE, PROXY) == playlist


def test_non_http_key_uris_are_left_alone():
    playlist = "\n".join([
        "#EXTM3U",
        '#EXT-X-KEY:METHOD=SAMPLE-AES,URI="skd://fairplay-key-id",KEYFORMAT="com.apple.streamingkeydelivery"',
        '#EXT-X-KEY:METHOD=AES-128,URI="data:text/plain;base64,AAAAAAAAAAAAAAAAAAAAAA=="',
        '#EXT-X-KEY:METHOD=NONE',
        '#EXT-X-MAP:URI=""',
    ])
    assert rewrite_playlist(playlist, BASE, PROXY) == playlist


def test_line_endings_blank_lines_and_whitespace_are_preserved():
    playlist = "#EXTM3U\r\n\r\n#EXTINF:5,\r\n  seg.ts  \r\n#EXT-X-ENDLIST"
    out = rewrite_playlist(playlist, "https://example.com/p.m3u8", PROXY)
    assert out == (
        "#EXTM3U\r\n\r\n#EXTINF:5,\r\n  "
        + _proxied("https://example.com/seg.ts")
        + "  \r\n#EXT-X-ENDLIST"
    )


def test_byte_order_mark_is_tolerated():
    playlist = "\ufeff#EXTM3U\n#EXTINF:5,\nseg.ts\n"
    out = rewrite_playlist(playlist, "https://example.com/p.m3u8", PROXY)
    assert out.startswith("\ufeff#EXTM3U\n")
    assert _decoded_references(out) == ["https://example.com/seg.ts"]


def test_unparseable_uri_line_passes_through():
    playlist = "#EXTM3U\n#EXTINF:5,\nhttp://[::1\nseg.ts\n"
    out = rewrite_playlist(playlist, "https://example.com/p.m3u8", PROXY)
    lines = out.split("\n")
    assert lines[2] == "http://[::1"
    assert lines[3] == _proxied("https://example.com/seg.ts")


def test_trailing_slash_on_proxy_base_is_ignored():
    out = rewrite_playlist("#EXTM3U\nseg.ts", "https://example.com/p.m3u8", PROXY + "/")
    assert out.split("\n")[1] == _proxied("https://example.com/seg.ts")


def test_rewrite_job_matches_rewrite_playlist():
    job = RewriteJob(playlist_text=MEDIA_PLAYLIST, base_url=BASE, proxy_base_url=PROXY)
    assert rewrite_job(job) == rewrite_playlist(MEDIA_PLAYLIST, BASE, PROXY)


def test_looks_like_playlist():
    assert looks_like_playlist("#EXTM3U\n")
    assert looks_like_playlist("\ufeff\n  #EXTM3U\n#EXTINF:1,\na.ts")
    assert not looks_like_playlist("<html><body>Forbidden</body></html>")
    assert not looks_like_playlist("")
