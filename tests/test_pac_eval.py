"""Run the generated FindProxyForURL under a real JavaScript engine."""
import pytest

from pac_blocklist import find_proxy_for_host, generate_pac_script, proxy_directive

dukpy = pytest.importorskip("dukpy")

HTTPS = "ssl.proxy.test:443"
HTTP = "plain.proxy.test:80"
DIRECTIVE = proxy_directive(HTTPS, HTTP)


def find_proxy(script, hosts):
    """Evaluate FindProxyForURL for every host in one engine run."""
    return dukpy.evaljs(
        script + "\n"
        "dukpy['hosts'].map(function (h) {"
        "  return FindProxyForURL('http://' + h + '/', h);"
        "});",
        hosts=list(hosts),
    )


def test_every_listed_domain_is_proxied():
    domains = ["site%03d.com" % i for i in range(300)]
    script = generate_pac_script(list(reversed(domains)), HTTPS, HTTP)
    assert find_proxy(script, domains) == [DIRECTIVE] * len(domains)


def test_absent_hosts_are_direct():
    script = generate_pac_script(["site%03d.com" % i for i in range(100)], HTTPS, HTTP)
    absent = ["aaa.com", "site000.co", "site1000.com", "zzz.com", "localhost"]
    assert find_proxy(script, absent) == ["DIRECT"] * len(absent)


def test_end_to_end_example():
    script = generate_pac_script(["b.com", "a.com", "c.com"], HTTPS, HTTP)
    assert find_proxy(script, ["sub.a.com", "a.com.", "x.y.b.com.", "d.com"]) == [
        DIRECTIVE, DIRECTIVE, DIRECTIVE, "DIRECT",
    ]


def test_https_and_http_endpoints_are_not_swapped():
    script = generate_pac_script(["a.com"], HTTPS, HTTP)
    assert find_proxy(script, ["a.com"]) == ["HTTPS ssl.proxy.test:443; PROXY plain.proxy.test:80;"]


def test_empty_list_is_always_direct():
    script = generate_pac_script([], HTTPS, HTTP)
    assert find_proxy(script, ["a.com", ""]) == ["DIRECT", "DIRECT"]


@pytest.mark.parametrize("domains", [
    ["a.com", "b.com", "c.com", "com", "co.uk"],
    ["example.com", "A.com", "a.com", "b.a.com"],
])
def test_script_agrees_with_python_matcher(domains):
    hosts = ["", ".", ".com", "a..com", "x.y.a.com.", "A.com", "bbc.co.uk",
             "com", "com.", "a.com..", "b.a.com", "sub.example.com", "example.com."]
    script = generate_pac_script(list(domains), HTTPS, HTTP)
    expected = [find_proxy_for_host(sorted(domains), host, HTTPS, HTTP) for host in hosts]
    assert find_proxy(script, hosts) == expected
