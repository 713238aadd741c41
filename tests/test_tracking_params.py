from pushpr.models import CombinedStatus, StatusContext
from pushpr.publish import find_ci_build_url, strip_tracking_params


def test_strips_all_utm_params_and_keeps_others():
    url = "https://circleci.com/gh/octo/repo/12?utm_campaign=vcs&utm_medium=referral&zeta=1&utm_source=github&alpha=2"
    assert strip_tracking_params(url) == "https://circleci.com/gh/octo/repo/12?alpha=2&zeta=1"


def test_url_without_query_is_unchanged():
    assert strip_tracking_params("https://circleci.com/gh/octo/repo/12") == "https://circleci.com/gh/octo/repo/12"


def test_only_tracking_params_leaves_no_query():
    url = "https://circleci.com/gh/octo/repo/12?utm_source=github"
    assert strip_tracking_params(url) == "https://circleci.com/gh/octo/repo/12"


def test_blank_values_and_fragment_survive():
    url = "https://ci.example.com/build?flag=&utm_medium=x#log"
    assert strip_tracking_params(url) == "https://ci.example.com/build?flag=#log"


def test_no_matching_context_means_no_url():
    status = CombinedStatus(
        state="success",
        statuses=[StatusContext(context="travis-ci/pr", target_url="https://travis-ci.org/x?utm_source=a")],
    )
    assert find_ci_build_url(status) == ""


def test_matching_context_without_target_url_is_ignored():
    status = CombinedStatus(state="pending", statuses=[StatusContext(context="ci/circleci", target_url=None)])
    assert find_ci_build_url(status) == ""
