from arbgate.orderbook import BookUpdate, LocalOrderBook


def test_snapshot_replaces_book():
    book = LocalOrderBook("binance", "ETH/USDC")
    book.apply(BookUpdate("binance", "ETH/USDC", [(100.0, 1.0)], [(101.0, 1.0)], is_snapshot=True))
    book.apply(BookUpdate("binance", "ETH/USDC", [(99.0, 2.0)], [(102.0, 2.0)], is_snapshot=True))

    ob = book.to_order_book(1.0)
    assert [(l.price, l.quantity) for l in ob.bids] == [(99.0, 2.0)]
    assert [(l.price, l.quantity) for l in ob.asks] == [(102.0, 2.0)]


def test_delta_updates_and_removes_levels():
    book = LocalOrderBook("bybit", "ETH/USDC")
    book.apply(BookUpdate("bybit", "ETH/USDC", [(100.0, 1.0), (99.0, 1.0)], [(101.0, 1.0)], is_snapshot=True))
    book.apply(BookUpdate("bybit", "ETH/USDC", bids=[(100.0, 0.0), (98.5, 3.0)], asks=[(101.0, 4.0)]))

    ob = book.to_order_book(2.0)
    assert [l.price for l in ob.bids] == [99.0, 98.5]
    assert ob.best_ask.quantity == 4.0
    assert ob.timestamp == 2.0


def test_sorting_and_depth():
    book = LocalOrderBook("backpack", "ETH/USDC", depth=2)
    book.apply(BookUpdate("backpack", "ETH/USDC",
                          bids=[(97.0, 1.0), (99.0, 1.0), (98.0, 1.0)],
                          asks=[(103.0, 1.0), (101.0, 1.0), (102.0, 1.0)]))

    ob = book.to_order_book(0.0)
    assert [l.price for l in ob.bids] == [99.0, 98.0]
    assert [l.price for l in ob.asks] == [101.0, 102.0]
    assert ob.bid_depth_usd == 99.0 + 98.0


def test_non_positive_prices_ignored_and_empty_book():
    book = LocalOrderBook("okx", "ETH/USDC")
    book.apply(BookUpdate("okx", "ETH/USDC", bids=[(0.0, 5.0), (-1.0, 1.0)]))
    assert book.is_empty

    book.apply(BookUpdate("okx", "ETH/USDC", bids=[(100.0, 1.0)]))
    book.apply(BookUpdate("okx", "ETH/USDC", bids=[(100.0, 0.0)]))
    assert book.is_empty
    assert book.to_order_book(0.0).best_bid is None
