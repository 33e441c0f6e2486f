"""
webmap.py

This module builds an interactive HTML webmap for the Houston blackout analysis.
Census tracts are shaded by median household income, tracts containing homes that
lost power are outlined, and the blackout regions are drawn on top. A boxplot of
income for impacted vs unimpacted tracts is embedded as an overlay.
"""

import io
import math
import os

import folium
import geopandas as gpd
import numpy as np
import pandas as pd
from matplotlib.colors import to_hex, to_rgb

def create_tooltip_content(properties, dataset_info):
    """
    Build an HTML snippet for a tract tooltip that displays:
      - The tract label (NAMELSAD) and GEOID,
      - The median household income (with prefix/suffix from dataset_info),
      - Whether the tract contains homes impacted by the blackout.
    """
    income_info = dataset_info["median_income"]
    html = "<div style='font-family: Verdana; font-size: 12px; border-radius: 8px; padding: 12px;'>"

    tract_name = properties.get('NAMELSAD', properties.get('GEOID', 'Tract'))
    html += f"<h4 style='margin:0 0 4px 0;'>{tract_name}</h4>"
    html += f"<p style='margin:2px 0;'>GEOID: {properties.get('GEOID', 'N/A')}</p>"

    income = properties.get('median_income')
    try:
        income_disp = f"{income_info.get('prefix', '')}{float(income):,.0f}{income_info.get('suffix', '')}"
    except (TypeError, ValueError):
        income_disp = "N/A"
    html += f"<p style='margin:2px 0;'><strong>{income_info['name']}:</strong> {income_disp}</p>"

    if properties.get('impacted'):
        impacted_info = dataset_info["impacted"]
        html += (
            f"<p style='margin:2px 0; color: {impacted_info['hex']}; font-weight:bold;'>"
            f"Contains homes that lost power</p>"
        )
    html += "</div>"
    return html

def clean_geojson_properties(geojson_data):
    """
    Drop callable properties and turn NaN/inf into None so the GeoJSON
    serializes cleanly.
    """
    for feature in geojson_data.get('features', []):
        feature['properties'] = {
            key: (None if isinstance(value, float) and not math.isfinite(value) else value)
            for key, value in feature.get('properties', {}).items()
            if not callable(value)
        }
    return geojson_data

def interpolate_color(color1, color2, t):
    """Hex color a fraction `t` of the way from color1 to color2."""
    start = np.array(to_rgb(color1))
    end = np.array(to_rgb(color2))
    return to_hex(start + (end - start) * t)

def get_style_function(min_val, max_val, dataset_info):
    """
    Returns a style function that interpolates fillColor on the 'median_income' property
    and outlines impacted tracts.
    """
    income_info = dataset_info["median_income"]
    impacted_hex = dataset_info["impacted"]["hex"]

    def style_function(feature):
        props = feature['properties']
        try:
            income = float(props.get('median_income'))
        except (TypeError, ValueError):
            income = None
        if income is None or not math.isfinite(income):
            fill_color = "#bdbdbd"
        else:
            if max_val != min_val:
                normalized = (income - min_val) / (max_val - min_val)
            else:
                normalized = 0
            normalized = max(0, min(normalized, 1))
            fill_color = interpolate_color(income_info["low_hex"], income_info["high_hex"], normalized)
        impacted = bool(props.get('impacted'))
        return {
            "fillColor": fill_color,
            "color": impacted_hex if impacted else "#636363",
            "weight": 2 if impacted else 0.5,
            "fillOpacity": 0.6
        }
    return style_function

def _income_series(tracts):
    if tracts is None or len(tracts) == 0:
        return pd.Series(dtype='float64')
    return pd.to_numeric(tracts['median_income'], errors='coerce').dropna()

def _income_figure(impacted_tracts, unimpacted_tracts, figsize=(4, 3), dpi=90):
    import matplotlib.pyplot as plt
    impacted_income = _income_series(impacted_tracts)
    unimpacted_income = _income_series(unimpacted_tracts)
    fig, ax = plt.subplots(figsize=figsize, dpi=dpi)
    ax.boxplot(
        [impacted_income.values, unimpacted_income.values],
        patch_artist=True,
        boxprops={'facecolor': '#fdd0a2'},
        medianprops={'color': 'black'}
    )
    ax.set_xticks([1, 2])
    ax.set_xticklabels([f"Impacted\n(n={len(impacted_income)})", f"Unimpacted\n(n={len(unimpacted_income)})"])
    ax.set_ylabel("Median household income ($)")
    ax.set_title("Income by blackout impact", fontsize=10)
    fig.tight_layout()
    return fig

def plot_income_comparison(impacted_tracts, unimpacted_tracts, output_path):
    """
    Save a boxplot comparing median income of impacted and unimpacted tracts.
    Descriptive only; no statistical test is run.
    """
    import matplotlib.pyplot as plt
    fig = _income_figure(impacted_tracts, unimpacted_tracts, figsize=(6, 4), dpi=120)
    fig.savefig(output_path)
    plt.close(fig)
    return str(output_path)

def income_boxplot_svg(impacted_tracts, unimpacted_tracts):
    """Render the income boxplot as an inline SVG string."""
    import matplotlib.pyplot as plt
    fig = _income_figure(impacted_tracts, unimpacted_tracts)
    svg_buf = io.BytesIO()
    fig.savefig(svg_buf, format='svg', transparent=True, bbox_inches='tight')
    svg_buf.seek(0)
    svg_data = svg_buf.read().decode('utf-8')
    svg_buf.close()
    plt.close(fig)
    return svg_data

def build_webmap(result, config, output_name="houston_blackout_map.html"):
    """
    Build an interactive folium webmap of the blackout analysis.

    Parameters:
      - result: a BlackoutResult from analysis_modules.compute_blackout_impacts.
      - config: an instance of BlackoutConfig.
      - output_name: file name of the HTML map written to config.output_dir.

    Returns:
      The file path of the saved HTML map.
    """
    print(f"Building blackout webmap: {result.impacted_count} impacted homes")
    dataset_info = config.dataset_info

    tracts = pd.concat([result.impacted_tracts, result.unimpacted_tracts], ignore_index=True)
    tracts = gpd.GeoDataFrame(tracts, geometry='geometry', crs=result.impacted_tracts.crs)
    tracts = tracts.to_crs("EPSG:4326")
    regions = result.regions.to_crs("EPSG:4326")
    study_area = result.study_area.to_crs("EPSG:4326")

    income = _income_series(tracts)
    min_income = income.min() if len(income) else 0
    max_income = income.max() if len(income) else 0
    style_func = get_style_function(min_income, max_income, dataset_info)

    bounds = study_area.total_bounds  # [minx, miny, maxx, maxy]
    center_lat = (bounds[1] + bounds[3]) / 2
    center_lon = (bounds[0] + bounds[2]) / 2

    m = folium.Map(location=[center_lat, center_lon],
                   zoom_start=9,
                   tiles="CartoDB Positron")

    m.get_root().header.add_child(folium.Element(
        '<meta name="viewport" content="width=device-width, initial-scale=1.0">'
    ))

    # Overlay panels share one card style; the chart is hidden on narrow screens
    overlay_css = """
    <style>
    .blackout-panel {
        position: fixed; z-index: 1000;
        background: rgba(255, 255, 255, 0.92);
        border: 1px solid #969696; border-radius: 6px;
        padding: 8px 12px;
        font-family: Arial, sans-serif;
    }
    .blackout-title { top: 12px; left: 56px; font-size: 20px; font-weight: 600; }
    .legend-box { bottom: 24px; right: 12px; width: 230px; font-size: 12px; }
    .chart-overlay { bottom: 24px; left: 12px; }
    @media (max-width: 640px) {
        .blackout-title { font-size: 13px; }
        .chart-overlay { display: none; }
    }
    </style>
    """
    m.get_root().header.add_child(folium.Element(overlay_css))

    # ---------------------------------------------------------------------
    # Study area outline
    folium.GeoJson(
        study_area,
        name="Study Area",
        style_function=lambda x: {
            "color": "black",
            "weight": 1.5,
            "fillOpacity": 0.0,
            "dashArray": "5, 5"
        }
    ).add_to(m)

    # ---------------------------------------------------------------------
    # Census tracts with tooltips
    tract_group = folium.FeatureGroup(name="Census Tracts")
    geojson_data = clean_geojson_properties(tracts.__geo_interface__)
    for feature in geojson_data.get('features', []):
        tooltip_html = create_tooltip_content(feature['properties'], dataset_info)
        folium.GeoJson(
            feature,
            style_function=style_func,
            tooltip=folium.Tooltip(tooltip_html, sticky=True)
        ).add_to(tract_group)
    tract_group.add_to(m)

    # ---------------------------------------------------------------------
    # Blackout regions
    if len(regions):
        region_hex = dataset_info["regions"]["hex"]
        region_data = clean_geojson_properties(regions.__geo_interface__)
        folium.GeoJson(
            region_data,
            name=dataset_info["regions"]["name"],
            style_function=lambda x: {
                "fillColor": region_hex,
                "color": region_hex,
                "weight": 0.5,
                "fillOpacity": 0.5
            }
        ).add_to(m)

    # ---------------------------------------------------------------------
    # Title overlay
    title_html = f'''
    <div class="blackout-panel blackout-title">
        Houston Blackout, February 2021: {result.impacted_count:,} homes lost power
    </div>
    '''
    m.get_root().html.add_child(folium.Element(title_html))

    # ---------------------------------------------------------------------
    # Legend overlay
    income_info = dataset_info["median_income"]
    legend_html = f"""
    <div class="blackout-panel legend-box">
        <h4 style="margin-bottom: 5px; font-size: 15px; font-weight: bold;">Legend</h4>
        <h5 style="margin: 5px 0; font-weight: bold;">{income_info['name']}</h5>
        <div style="width: 160px; height: 10px; border-radius: 5px;
                    background: linear-gradient(to right, {income_info['low_hex']}, {income_info['high_hex']});"></div>
        <div style="display: flex; justify-content: space-between; width: 160px;">
            <span>${min_income:,.0f}</span>
            <span>${max_income:,.0f}</span>
        </div>
        <div style="display: flex; align-items: center; gap: 6px; margin-top: 8px;">
            <div style="width: 18px; height: 18px; border: 2px solid {dataset_info['impacted']['hex']}; border-radius: 3px;"></div>
            <span>{dataset_info['impacted']['name']}</span>
        </div>
        <div style="display: flex; align-items: center; gap: 6px; margin-top: 6px;">
            <div style="width: 18px; height: 18px; background: {dataset_info['regions']['hex']}; border-radius: 3px;"></div>
            <span>{dataset_info['regions']['name']}</span>
        </div>
    </div>
    """
    m.get_root().html.add_child(folium.Element(legend_html))

    # ---------------------------------------------------------------------
    # Income comparison chart overlay
    svg_data = income_boxplot_svg(result.impacted_tracts, result.unimpacted_tracts)
    chart_html = f'<div class="blackout-panel chart-overlay">{svg_data}</div>'
    m.get_root().html.add_child(folium.Element(chart_html))

    folium.LayerControl(collapsed=True).add_to(m)

    output_path = os.path.join(config.output_dir, output_name)
    m.save(output_path)
    print(f"Webmap saved to {output_path}")
    return output_path
